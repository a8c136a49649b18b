"""
Error taxonomy for the marketplace API.

Each error maps to exactly one HTTP status code. Routers and services raise
these; the handlers registered in ``register_exception_handlers`` turn them
into JSON responses so no endpoint has to build error payloads itself.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Access denied"


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource conflict"


class UnprocessableEntityError(AppError):
    status_code = 422
    default_message = "Unprocessable entity"


class WebhookSignatureError(AppError):
    status_code = 400
    default_message = "Webhook signature verification failed"


class ConfigurationError(AppError):
    status_code = 500
    default_message = "Server configuration error"


class EmailError(AppError):
    status_code = 500
    default_message = "Email sending failed"


def _error_body(message: str, **extra):
    body = {"success": False, "detail": message}
    body.update(extra)
    return body


async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message))


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key = list((exc.details or {}).get("keyValue", {}).keys())
    message = f"Duplicate value for {', '.join(key)}" if key else "Duplicate record"
    return JSONResponse(status_code=409, content=_error_body(message))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", [])[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=_error_body("Validation failed", errors=errors))


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
