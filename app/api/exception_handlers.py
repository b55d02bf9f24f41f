# FILE: app/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.db.session import SessionLocal
from app.services.error_logger import format_exception, log_error
from app.utils.resp import err

log = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
            for e in exc.errors()
        ]
        return err("Validation error", 400, details=details)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        db = SessionLocal()
        try:
            log_error(
                db,
                description=str(exc),
                endpoint=f"{request.method} {request.url.path}",
                module=type(exc).__module__,
                function=type(exc).__name__,
                http_status=500,
                stack_trace=format_exception(exc),
            )
        finally:
            db.close()
        return err("Internal server error", 500)
