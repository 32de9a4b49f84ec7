from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from capture_store.config import AppConfig, build_storage
from capture_store.errors import (
    CapacityExceededError,
    CaptureStoreError,
    InvalidSearchPatternError,
    NotFoundError,
    SearchTimeoutError,
)
from capture_store.routers import sessions
from capture_store.services.search_service import SearchService
from capture_store.storage.base import Storage

_STATUS_BY_ERROR: tuple[tuple[type[CaptureStoreError], int], ...] = (
    (NotFoundError, 404),
    (CapacityExceededError, 507),
    (InvalidSearchPatternError, 422),
    (SearchTimeoutError, 504),
)


class _StatsAccessFilter(logging.Filter):
    """Filter out /stats polling from uvicorn access logs."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = path

    def filter(self, record: logging.LogRecord) -> bool:
        return self._path not in record.getMessage()


def _status_for(exc: CaptureStoreError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    config: AppConfig,
    storage: Storage | None = None,
    search_service: SearchService | None = None,
) -> FastAPI:

    if not config.logging.quiet:
        logging.getLogger("uvicorn.access").addFilter(_StatsAccessFilter("/api/stats"))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_storage = storage is None
        owned_search = search_service is None
        app.state.config = config
        app.state.storage = storage or build_storage(config)
        app.state.search_service = search_service or SearchService(config.search)
        logger.info("Serving sessions from {!r}", app.state.storage)
        yield
        if owned_search:
            app.state.search_service.close()
        if owned_storage:
            app.state.storage.close()

    app = FastAPI(
        title="capture-store",
        lifespan=lifespan,
        redoc_url=None,
    )

    @app.exception_handler(CaptureStoreError)
    async def capture_store_error(request: Request, exc: CaptureStoreError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=status_code)

    @app.get("/")
    async def root_redirect():
        return RedirectResponse(url="/docs")

    app.include_router(sessions.router, prefix="/api")

    return app
