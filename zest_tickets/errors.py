"""Application errors and their JSON rendering."""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings


class AppError(Exception):
    """Base class for application errors."""

    status_code = 400

    def __init__(self, message: str, debug: Optional[Dict[str, Any]] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.debug = debug
        self.details = details


class ValidationError(AppError):
    """Raised when request data fails a business rule."""

    status_code = 400


class AuthenticationError(AppError):
    status_code = 401


class PermissionDeniedError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    """Raised when the target is in a state that forbids the operation."""

    status_code = 409


class RateLimitedError(AppError):
    status_code = 429


class PaymentGatewayError(AppError):
    """Razorpay rejected the call or stayed unreachable after retries."""

    status_code = 502


class ServiceUnavailableError(AppError):
    status_code = 503


def to_body(error: AppError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": error.message}
    if error.details is not None:
        body["details"] = error.details
    # debug payloads may contain raw ownership fields
    if error.debug and not settings.is_production:
        body["debug"] = error.debug
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=to_body(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # malformed bodies share the {"error": ...} shape of business-rule failures
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )
