"""
FastAPI application entry point for the club site backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from club_backend import __version__
from club_backend.auth import ensure_admin_user, warn_on_default_secret
from club_backend.config import Settings, get_settings
from club_backend.db import SqlContentStore
from club_backend.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the store before the first request is accepted. Schema migrations
    run inside the store constructor, so a MigrationError aborts startup.
    """
    settings: Settings = app.state.settings
    store = SqlContentStore(
        settings.resolved_database_url(),
        legacy_upload_root=settings.legacy_upload_root,
    )
    try:
        ensure_admin_user(store, settings)
        warn_on_default_secret(settings)
        app.state.store = store
        yield
    finally:
        store.close()


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception(
        "Database error on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"detail": "Database error"})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Club Site Backend", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    if settings.static_dir:
        static_path = Path(settings.static_dir)
        if static_path.is_dir():
            # Mounted last so API routes take precedence.
            app.mount("/", StaticFiles(directory=static_path, html=True), name="static")
        else:
            logger.warning("STATIC_DIR %s does not exist; not serving pages", static_path)
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)
