"""
Error taxonomy and FastAPI exception handlers.

Every failure is rendered as ``{"success": false, "message": ..., "errors": [...]}``.
Unexpected and database errors are logged in full but answered with a
generic message.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException

from log import get_logger, get_request_id

logger = get_logger("errors")


class AppError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class ValidationError(AppError):
    """Malformed input. Carries one entry per violated field."""

    status_code = 400
    message = "Validation failed"

    def __init__(self, errors: list[dict], message: Optional[str] = None):
        super().__init__(message)
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}], message)

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        return cls(field_errors(exc.errors()))


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class Forbidden(AppError):
    status_code = 403
    message = "Not authorized"


class Conflict(AppError):
    status_code = 409
    message = "Conflict"


class DuplicateVote(Conflict):
    message = "You have already voted with this option"


class DependencyFailure(AppError):
    """An out-of-band collaborator (email) failed. Never surfaced to callers."""

    status_code = 502
    message = "Dependency failure"


def field_errors(raw_errors) -> list[dict]:
    out = []
    for err in raw_errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        out.append({"field": ".".join(loc) or "request", "message": err.get("msg", "Invalid value")})
    return out


def _payload(message: str, errors: Optional[list] = None) -> dict:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        logger.warning(
            "app_error",
            error_type=type(exc).__name__,
            detail=exc.message,
            path=request.url.path,
            request_id=get_request_id(),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_payload(exc.message, getattr(exc, "errors", None)),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = field_errors(exc.errors())
        logger.warning("validation_error", errors=errors, request_id=get_request_id())
        return JSONResponse(status_code=400, content=_payload("Validation failed", errors))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("http_exception", detail=exc.detail, status_code=exc.status_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=_payload(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(PyMongoError)
    async def database_error_handler(request: Request, exc: PyMongoError):
        logger.exception("database_error", error=str(exc), request_id=get_request_id())
        return JSONResponse(status_code=500, content=_payload("Database error"))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            request_id=get_request_id(),
        )
        return JSONResponse(status_code=500, content=_payload("Internal server error"))
