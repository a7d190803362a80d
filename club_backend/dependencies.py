"""
Dependency wiring for the FastAPI app.

The store and settings hang off `app.state`, set up by the application
lifespan, so every request receives the same explicit handle.
"""

from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from club_backend.auth import TokenClaims, decode_token
from club_backend.config import Settings
from club_backend.db import ContentStore

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> ContentStore:
    return request.app.state.store


def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> TokenClaims:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access token required")
    try:
        return decode_token(
            credentials.credentials,
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
