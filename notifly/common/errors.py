"""Error taxonomy shared by the gateway, worker and DLQ services.

Admission errors are raised synchronously and rendered by
`install_error_handlers`; provider errors never leave the worker and are
resolved by the retry topology instead.
"""

from enum import Enum

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from notifly.common.logging import logger


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    IDEMPOTENT_CONFLICT = "IDEMPOTENT_CONFLICT"
    CHANNEL_DISABLED = "CHANNEL_DISABLED"
    INVALID_API_KEY = "INVALID_API_KEY"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    FORBIDDEN = "FORBIDDEN"


class NotiflyError(Exception):
    """Base error carrying a taxonomy code, HTTP status and retryability."""

    code = ErrorCode.INTERNAL_ERROR
    status_code = 500
    retryable = True

    def __init__(self, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers


class ValidationFailed(NotiflyError):
    code = ErrorCode.VALIDATION_FAILED
    status_code = 400
    retryable = False


class InvalidApiKey(NotiflyError):
    code = ErrorCode.INVALID_API_KEY
    status_code = 401
    retryable = False


class Forbidden(NotiflyError):
    code = ErrorCode.FORBIDDEN
    status_code = 403
    retryable = False


class RateLimitExceeded(NotiflyError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429
    retryable = True

    def __init__(self, message: str, retry_after_seconds: int) -> None:
        super().__init__(message, headers={"Retry-After": str(max(1, retry_after_seconds))})
        self.retry_after_seconds = retry_after_seconds


class IdempotentConflict(NotiflyError):
    code = ErrorCode.IDEMPOTENT_CONFLICT
    status_code = 409
    retryable = False


class NotFound(NotiflyError):
    code = ErrorCode.NOT_FOUND
    status_code = 404
    retryable = False


class InvalidState(NotiflyError):
    code = ErrorCode.INVALID_STATE
    status_code = 409
    retryable = False


class InternalError(NotiflyError):
    code = ErrorCode.INTERNAL_ERROR
    status_code = 500
    retryable = True


class ProviderError(Exception):
    """Failure reported by a channel provider.

    `retryable` is decided once, where the provider failure is observed:
    network errors and timeouts retry, permanent rejections do not.
    """

    def __init__(self, error_code: str, message: str, retryable: bool, details: dict | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable
        self.details = details or {}


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}, "requestId": None}


async def _notifly_error_handler(_: Request, exc: NotiflyError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code.value, exc.message),
        headers=exc.headers,
    )


async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request body"
    return JSONResponse(status_code=400, content=error_body(ErrorCode.VALIDATION_FAILED.value, message))


async def _unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error error=%s", exc)
    return JSONResponse(status_code=500, content=error_body(ErrorCode.INTERNAL_ERROR.value, "internal error"))


def install_error_handlers(app: FastAPI) -> None:
    """Render every error as `{error: {code, message}, requestId: null}`."""

    app.add_exception_handler(NotiflyError, _notifly_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
