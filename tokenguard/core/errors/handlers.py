from collections.abc import Awaitable, Callable
import logging
from typing import Any, cast

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import sentry_sdk
from starlette.responses import Response

from loggers import get_logger
from tokenguard.core.errors.exceptions import CoreException

response_logger = get_logger("tokenguard.request.error_response", plain_format=True)

HandlerCallable = Callable[[Request, Exception], Awaitable[Response]]

SENSITIVE_KEYS = frozenset(
    {"authorization", "token", "password", "secret", "api_key", "private_key"}
)


def as_exception_handler(handler: Any) -> HandlerCallable:
    """
    Convert a handler class instance to a compatible exception handler callable.

    Args:
        handler: An instance of an exception handler class with __call__ method

    Returns:
        A callable with the correct type signature for FastAPI exception handlers
    """
    return cast(HandlerCallable, handler.__call__)


def format_error_response(
    error_type: str, message: str | None, code: str | None = None
) -> dict[str, Any]:
    """
    Format error response content for JSONResponse

    Args:
        error_type: Type of error (e.g., "Unauthorized", "Forbidden")
        message: Detailed error message
        code: Stable machine-readable error code

    Returns:
        Dictionary with error information
    """
    return {
        "error": error_type,
        "message": message or "No additional details available",
        "code": code,
    }


def format_log_message(
    request: Request,
    error_type: str,
    message: str | None,
    additional_info: dict[str, Any] | None = None,
    code: str | None = None,
) -> str:
    """
    Format an error for the response log. Sensitive ``additional_info`` values
    are masked; ``additional_info`` never reaches the client.
    """
    msg = " ".join((message or "No additional details available").split())
    if len(msg) > 500:
        msg = msg[:497] + "..."

    request_id = request.headers.get("x-request-id")
    prefix = f"[{request_id}] " if request_id else ""
    log_msg = f"{prefix}[{error_type}] {request.method} {request.url.path} | {msg}"
    if code:
        log_msg = f"{log_msg} ({code})"

    if additional_info:
        details = ", ".join(
            f"{k}={'***' if k.lower() in SENSITIVE_KEYS else repr(additional_info[k])}"
            for k in sorted(additional_info)
        )
        log_msg = f"{log_msg} | Additional info: {details}"
    return log_msg


class CoreExceptionHandler:
    """
    Render a ``CoreException`` as ``{"error", "message", "code"}``.

    Subclasses only pick the status code, the error label, the log level and
    whether the error is reported to Sentry.
    """

    status_code = 400
    error_type = "Bad request"
    log_level = logging.INFO
    capture = False

    async def __call__(self, request: Request, exc: CoreException) -> JSONResponse:
        response_logger.log(
            self.log_level,
            format_log_message(
                request, self.error_type, exc.message, exc.additional_info, exc.code
            ),
        )
        if self.capture:
            sentry_sdk.capture_exception(exc)
        return JSONResponse(
            status_code=self.status_code,
            content=format_error_response(self.error_type, exc.message, exc.code),
        )


class UnauthorizedExceptionHandler(CoreExceptionHandler):
    status_code = 401
    error_type = "Unauthorized"
    log_level = logging.WARNING


class AccessForbiddenExceptionHandler(CoreExceptionHandler):
    status_code = 403
    error_type = "Forbidden"
    log_level = logging.WARNING


class BlockedExceptionHandler(AccessForbiddenExceptionHandler):
    error_type = "Blocked"


class ConfigurationErrorHandler(CoreExceptionHandler):
    status_code = 500
    error_type = "Configuration error"
    log_level = logging.ERROR
    capture = True


class SigningKeyErrorHandler(ConfigurationErrorHandler):
    error_type = "Signing key error"


class InfrastructureExceptionHandler(ConfigurationErrorHandler):
    error_type = "Infrastructure error"


class RequestValidationExceptionHandler:
    async def __call__(
        self, request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        safe_detail = jsonable_encoder(exc.errors())
        response_logger.debug(
            format_log_message(request, "Request validation error", str(safe_detail))
        )
        return JSONResponse(status_code=422, content={"detail": safe_detail})
