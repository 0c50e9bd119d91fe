"""
Error taxonomy for the storefront API.

Every domain failure is an AppError subclass carrying its HTTP status. The
handlers registered by register_error_handlers render them as
{"message": ..., "error": ...} and, outside production, attach the traceback.
"""
import traceback
from typing import Any, Dict

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from settings import Settings

logger = structlog.get_logger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid input"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class Unauthenticated(AppError):
    status_code = 401
    default_message = "Authentication required"


class InvalidCredential(AppError):
    status_code = 401
    default_message = "Invalid or expired token"


class Forbidden(AppError):
    status_code = 403
    default_message = "Admin access required"


class InvalidOrExpiredOtp(AppError):
    status_code = 401
    default_message = "Invalid or expired OTP"


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict"


class TooManyRequests(AppError):
    status_code = 429
    default_message = "Too many OTP requests, please try again later"


class FeatureNotImplemented(AppError):
    status_code = 501
    default_message = "Not implemented"


class DeliveryFailed(AppError):
    status_code = 502
    default_message = "Failed to deliver OTP, please try again"


def _format_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ValidationError.default_message
    first = errors[0]
    # drop the "body"/"query"/"path" prefix
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    msg = first.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{'.'.join(loc)}: {msg}" if loc else msg


def _body(message: str, error: str, exc: BaseException, settings: Settings) -> Dict[str, Any]:
    body = {"message": message, "error": error}
    if not settings.is_production:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


def register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("request_failed", method=request.method, path=request.url.path,
            status=exc.status_code, error=type(exc).__name__, message=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_body(exc.message, type(exc).__name__, exc, settings),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _format_validation_error(exc)
        logger.warning("request_invalid", method=request.method, path=request.url.path, message=message)
        return JSONResponse(
            status_code=ValidationError.status_code,
            content=_body(message, ValidationError.__name__, exc, settings),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("request_crashed", method=request.method, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=_body(AppError.default_message, "InternalServerError", exc, settings),
        )
