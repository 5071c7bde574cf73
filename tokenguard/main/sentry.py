import logging

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from loggers import get_logger
from tokenguard.main.config import Config

logger = get_logger(__name__)

_sentry_initialized = False


def init_sentry(config: Config) -> bool:
    """
    Initialize the Sentry client once.

    Returns:
        bool: True when Sentry is active after the call
    """
    global _sentry_initialized

    if _sentry_initialized:
        return True

    if config.app.DEBUG or config.app.TESTING:
        logger.info("DEBUG/TESTING enabled. Skipping Sentry initialization.")
        return False

    if not config.sentry.SENTRY_ENABLED or not config.sentry.SENTRY_DSN:
        logger.info("Sentry disabled or DSN empty. Skipping Sentry initialization.")
        return False

    sentry_sdk.init(
        dsn=config.sentry.SENTRY_DSN,
        environment=config.sentry.SENTRY_ENV,
        release=config.app.VERSION,
        integrations=[
            # Security warnings become breadcrumbs, fail-open errors become events
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
    )
    _sentry_initialized = True
    logger.info("Sentry initialized.")
    return True
