from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from tokenguard.core.errors.exceptions import (
    AccessForbiddenException,
    BlockedError,
    ConfigurationError,
    CoreException,
    InfrastructureException,
    SigningKeyError,
    UnauthorizedException,
)
from tokenguard.core.errors.handlers import (
    AccessForbiddenExceptionHandler,
    BlockedExceptionHandler,
    ConfigurationErrorHandler,
    CoreExceptionHandler,
    InfrastructureExceptionHandler,
    RequestValidationExceptionHandler,
    SigningKeyErrorHandler,
    UnauthorizedExceptionHandler,
    as_exception_handler,
)


def include_exceptions_handlers(app: FastAPI) -> None:
    """
    Registers exception handlers for the token errors with the provided FastAPI
    application instance. Starlette picks the handler of the closest class in
    the exception's MRO, so ``TokenException`` subclasses land on the 401 handler.

    Parameters:
        app (FastAPI): The FastAPI application instance to which the exception
        handlers will be added.
    """
    app.add_exception_handler(
        RequestValidationError,
        as_exception_handler(RequestValidationExceptionHandler()),
    )
    app.add_exception_handler(
        CoreException, as_exception_handler(CoreExceptionHandler())
    )
    app.add_exception_handler(
        UnauthorizedException, as_exception_handler(UnauthorizedExceptionHandler())
    )
    app.add_exception_handler(
        AccessForbiddenException,
        as_exception_handler(AccessForbiddenExceptionHandler()),
    )
    app.add_exception_handler(
        BlockedError, as_exception_handler(BlockedExceptionHandler())
    )
    app.add_exception_handler(
        ConfigurationError, as_exception_handler(ConfigurationErrorHandler())
    )
    app.add_exception_handler(
        SigningKeyError, as_exception_handler(SigningKeyErrorHandler())
    )
    app.add_exception_handler(
        InfrastructureException, as_exception_handler(InfrastructureExceptionHandler())
    )
