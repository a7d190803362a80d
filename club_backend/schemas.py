"""
Pydantic schemas for the club site API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1)


class AdminUserSummary(BaseModel):
    id: int
    username: str


class LoginResponse(BaseModel):
    token: str
    expires_at: datetime
    user: AdminUserSummary


class ResultSummary(BaseModel):
    id: int
    category: str
    year: str
    image_filename: str
    image_mimetype: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ResultSaveResponse(ResultSummary):
    message: str


class DocumentSummary(BaseModel):
    id: int
    title: str
    category: str
    file_filename: str
    file_mimetype: str
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DocumentSaveResponse(DocumentSummary):
    message: str


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    mode: str
