from fastapi import FastAPI
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from loggers import get_logger
from tokenguard.main.config import get_settings
from tokenguard.main.lifespan import lifespan
from tokenguard.main.presentation import include_exceptions_handlers

logger = get_logger(__name__)


def get_application() -> FastAPI:
    """
    Application with the token error handlers and the Redis-backed components
    wired on startup. Routers are mounted by the embedding service.
    """
    config = get_settings()
    application = FastAPI(
        title=config.app.PROJECT_NAME,
        debug=config.app.DEBUG,
        version=config.app.VERSION,
        lifespan=lifespan,
    )

    include_exceptions_handlers(application)

    # Sentry middleware for error tracking
    application.add_middleware(SentryAsgiMiddleware)

    return application
