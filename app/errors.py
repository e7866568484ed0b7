# app/errors.py
# 도메인 예외와 공통 에러 응답 형식 {"error": ..., "status": ...}
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """세션/케이스/피드백 도메인 규칙 위반. 기본 400."""

    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(SessionError):
    status_code = 404


class PermissionDeniedError(SessionError):
    status_code = 403


def _error_body(message, status_code: int, **extra) -> dict:
    body = {"error": message, "status": status_code}
    body.update(extra)
    return body


async def session_error_handler(request: Request, exc: SessionError):
    logger.info("[ERROR] %s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.status_code))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail, exc.status_code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_error_body("Validation failed", 400, validationErrors=errors))


async def unhandled_exception_handler(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex[:12]
    logger.exception("[ERROR] unhandled error id=%s %s %s", error_id, request.method, request.url.path)
    message = "Internal server error" if settings.is_prod else f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=_error_body(message, 500, errorId=error_id))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SessionError, session_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
