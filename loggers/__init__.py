import logging
from logging import FileHandler, Logger, StreamHandler
import os
from typing import Any

from tokenguard.main.config import get_settings

logging_format = "%(asctime)s [%(levelname)s]|[%(process)d]| %(name)s: %(message)s"
time_logging_format = "%Y-%m-%d %H:%M:%S"


def _level(name: str, default: int) -> int:
    return getattr(logging, name.upper(), default)


def get_file_handler() -> FileHandler:
    app_config = get_settings().app
    if not os.path.exists(app_config.LOG_DIR):
        os.makedirs(app_config.LOG_DIR)

    log_file = os.path.join(app_config.LOG_DIR, "tokenguard.log")
    file_handler = logging.FileHandler(log_file, "a", "utf-8")
    file_handler.setLevel(_level(app_config.LOG_LEVEL_FILE, logging.WARNING))
    file_handler.setFormatter(logging.Formatter(logging_format, time_logging_format))
    return file_handler


def get_stream_handler() -> StreamHandler:  # type: ignore
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(_level(get_settings().app.LOG_LEVEL, logging.INFO))
    stream_handler.setFormatter(logging.Formatter(logging_format, time_logging_format))
    return stream_handler


def get_logger(name: Any, *, plain_format: bool = False) -> Logger:
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    app_config = get_settings().app
    log_level = _level(app_config.LOG_LEVEL, logging.INFO)
    logger.setLevel(log_level)

    if plain_format:
        formatter = logging.Formatter(
            "%(asctime)s [%(process)d]| %(message)s", time_logging_format
        )
        stream_handler = StreamHandler()
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    else:
        if app_config.LOG_TO_FILE:
            logger.addHandler(get_file_handler())
        logger.addHandler(get_stream_handler())

    logger.propagate = True
    return logger
