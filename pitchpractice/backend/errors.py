import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .constants import MAX_ERROR_CHARS


logger = logging.getLogger("uvicorn.error")


def truncate(text: Optional[str], max_chars: int = MAX_ERROR_CHARS) -> str:
    value = (text or "").strip()
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."


class ApiError(HTTPException):
    """HTTP error rendered as ``{"ok": false, "error": ..., "details": ...}``."""

    def __init__(self, status_code: int, error: str, details: Any = None, **extra: Any) -> None:
        super().__init__(status_code=status_code, detail=error)
        self.error = error
        self.details = details
        self.extra = extra

    def body(self) -> dict:
        payload = {"ok": False, "error": self.error}
        if self.details is not None:
            payload["details"] = self.details
        payload.update(self.extra)
        return payload


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("path=%s unexpected_error", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": "Internal server error", "details": truncate(str(exc))},
        )
