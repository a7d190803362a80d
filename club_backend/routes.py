"""
HTTP routes for the club site API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile

from club_backend import __version__
from club_backend.auth import TokenClaims, authenticate, issue_token
from club_backend.config import Settings
from club_backend.db import ContentStore, DuplicateResultError, FilePayload
from club_backend.dependencies import get_app_settings, get_store, require_admin
from club_backend.schemas import (
    AdminUserSummary,
    DocumentSaveResponse,
    DocumentSummary,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ResultSaveResponse,
    ResultSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _is_image(mimetype: str) -> bool:
    return mimetype.startswith("image/")


def _is_pdf(mimetype: str) -> bool:
    return mimetype == "application/pdf"


def _read_upload(
    upload: UploadFile,
    *,
    accept: Callable[[str], bool],
    rejection: str,
    max_bytes: int,
) -> FilePayload:
    """Validate MIME type and size of an upload and load it into memory."""
    mimetype = (upload.content_type or "").lower()
    if not accept(mimetype):
        raise HTTPException(status_code=400, detail=rejection)
    data = upload.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=413, detail=f"File exceeds the {max_bytes} byte upload limit"
        )
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return FilePayload(
        data=data, filename=upload.filename or "upload", mimetype=mimetype
    )


def _content_disposition(disposition: str, filename: str) -> str:
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "")
    return (
        f'{disposition}; filename="{fallback or "download"}"; '
        f"filename*=UTF-8''{quote(filename)}"
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(
        status="OK",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        mode="database",
    )


# Auth


@router.post("/auth/login", response_model=LoginResponse)
@router.post("/login", response_model=LoginResponse, include_in_schema=False)
def login(
    payload: LoginRequest,
    store: ContentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    user = authenticate(store, payload.username, payload.password)
    if user is None:
        logger.info("Rejected login for %r", payload.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = issue_token(
        user,
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        ttl=timedelta(hours=settings.token_ttl_hours),
    )
    return LoginResponse(
        token=token,
        expires_at=expires_at,
        user=AdminUserSummary(id=user.id, username=user.username),
    )


# Results


@router.get("/results", response_model=list[ResultSummary])
def list_results(store: ContentStore = Depends(get_store)):
    return [ResultSummary(**record.as_dict()) for record in store.list_results()]


# Registered before /results/{category}/{year}, which would otherwise match.
@router.get("/results/{result_id}/image")
def get_result_image(result_id: int, store: ContentStore = Depends(get_store)):
    payload = store.get_result_image(result_id)
    if payload is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return Response(
        content=payload.data,
        media_type=payload.mimetype,
        headers={
            "Content-Disposition": _content_disposition("inline", payload.filename)
        },
    )


@router.get("/results/{category}/{year}", response_model=ResultSummary)
def get_result_by_key(
    category: str, year: str, store: ContentStore = Depends(get_store)
):
    record = store.get_result_by_key(category, year)
    if record is None:
        raise HTTPException(status_code=404, detail="Result not found")
    return ResultSummary(**record.as_dict())


@router.post("/results", response_model=ResultSaveResponse)
def save_result(
    category: str = Form(..., min_length=1, max_length=50),
    year: str = Form(..., min_length=1, max_length=10),
    description: str | None = Form(None),
    image: UploadFile | None = File(None),
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    """
    Create the result for (category, year), or replace its image and
    description when one already exists.
    """
    if image is None:
        raise HTTPException(status_code=400, detail="Image file is required")
    payload = _read_upload(
        image,
        accept=_is_image,
        rejection="Only image files are allowed for results",
        max_bytes=settings.max_upload_bytes,
    )
    record = store.save_result(category, year, payload, description)
    logger.info(
        "%s saved result %s/%s (id=%s, %d bytes)",
        admin.username,
        category,
        year,
        record.id,
        len(payload.data),
    )
    return ResultSaveResponse(**record.as_dict(), message="Result saved successfully")


@router.put("/results/{result_id}", response_model=ResultSaveResponse)
def update_result(
    result_id: int,
    category: str | None = Form(None, min_length=1, max_length=50),
    year: str | None = Form(None, min_length=1, max_length=10),
    description: str | None = Form(None),
    image: UploadFile | None = File(None),
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    payload = None
    if image is not None and image.filename:
        payload = _read_upload(
            image,
            accept=_is_image,
            rejection="Only image files are allowed for results",
            max_bytes=settings.max_upload_bytes,
        )
    try:
        record = store.update_result(
            result_id,
            category=category,
            year=year,
            description=description,
            image=payload,
        )
    except DuplicateResultError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if record is None:
        raise HTTPException(status_code=404, detail="Result not found")
    logger.info("%s updated result %s", admin.username, result_id)
    return ResultSaveResponse(
        **record.as_dict(), message="Result updated successfully"
    )


@router.delete("/results/{result_id}", response_model=MessageResponse)
def delete_result(
    result_id: int,
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
):
    if not store.delete_result(result_id):
        raise HTTPException(status_code=404, detail="Result not found")
    logger.info("%s deleted result %s", admin.username, result_id)
    return MessageResponse(message="Result deleted successfully")


# Documents


@router.get("/documents", response_model=list[DocumentSummary])
def list_documents(store: ContentStore = Depends(get_store)):
    return [DocumentSummary(**record.as_dict()) for record in store.list_documents()]


@router.get("/documents/{document_id}", response_model=DocumentSummary)
def get_document(document_id: int, store: ContentStore = Depends(get_store)):
    record = store.get_document(document_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return DocumentSummary(**record.as_dict())


@router.get("/documents/{document_id}/file")
def get_document_file(document_id: int, store: ContentStore = Depends(get_store)):
    payload = store.get_document_file(document_id)
    if payload is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return Response(
        content=payload.data,
        media_type=payload.mimetype,
        headers={
            "Content-Disposition": _content_disposition("attachment", payload.filename)
        },
    )


@router.post("/documents", response_model=DocumentSaveResponse)
def create_document(
    title: str = Form(..., min_length=1, max_length=255),
    category: str | None = Form(None, max_length=50),
    description: str | None = Form(None),
    file: UploadFile | None = File(None),
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    if file is None:
        raise HTTPException(status_code=400, detail="PDF file is required")
    payload = _read_upload(
        file,
        accept=_is_pdf,
        rejection="Only PDF files are allowed for documents",
        max_bytes=settings.max_upload_bytes,
    )
    record = store.create_document(title, category or "general", payload, description)
    logger.info(
        "%s uploaded document %s (id=%s, %d bytes)",
        admin.username,
        payload.filename,
        record.id,
        len(payload.data),
    )
    return DocumentSaveResponse(
        **record.as_dict(), message="Document saved successfully"
    )


@router.put("/documents/{document_id}", response_model=DocumentSaveResponse)
def update_document(
    document_id: int,
    title: str | None = Form(None, min_length=1, max_length=255),
    category: str | None = Form(None, max_length=50),
    description: str | None = Form(None),
    file: UploadFile | None = File(None),
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    payload = None
    if file is not None and file.filename:
        payload = _read_upload(
            file,
            accept=_is_pdf,
            rejection="Only PDF files are allowed for documents",
            max_bytes=settings.max_upload_bytes,
        )
    record = store.update_document(
        document_id,
        title=title,
        category=category,
        description=description,
        file=payload,
    )
    if record is None:
        raise HTTPException(status_code=404, detail="Document not found")
    logger.info("%s updated document %s", admin.username, document_id)
    return DocumentSaveResponse(
        **record.as_dict(), message="Document updated successfully"
    )


@router.delete("/documents/{document_id}", response_model=MessageResponse)
def delete_document(
    document_id: int,
    admin: TokenClaims = Depends(require_admin),
    store: ContentStore = Depends(get_store),
):
    if not store.delete_document(document_id):
        raise HTTPException(status_code=404, detail="Document not found")
    logger.info("%s deleted document %s", admin.username, document_id)
    return MessageResponse(message="Document deleted successfully")
