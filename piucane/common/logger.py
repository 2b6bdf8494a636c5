"""
Application Logger

Logging setup for the gamification engine. All package loggers hang off
the ``piucane`` logger, which is configured once from the ``logging``
section of the app config. ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_FILE``
override that section when set.

User identifiers never reach log output in clear: components log through
``for_user`` or ``anonymize_user_id``.
"""

import os
import sys
import json
import time
import hashlib
import logging
import datetime
import functools
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from piucane.common.config import LoggingConfig, get_config

APP_LOGGER_NAME = "piucane"
TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s"
TEXT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

F = TypeVar('F', bound=Callable[..., Awaitable[Any]])

__all__ = [
    'APP_LOGGER_NAME',
    'JsonFormatter',
    'LoggerAdapter',
    'app_logger',
    'anonymize_user_id',
    'configure_logger',
    'for_user',
    'log_execution_time',
]


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record.

    Structured event fields passed as ``extra={"data": {...}}`` are lifted
    to the top level so XP awards and difficulty adjustments can be queried
    by field in log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        event: Dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        data = getattr(record, "data", None)
        if isinstance(data, dict):
            event.update(data)

        if record.exc_info:
            event["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(event, default=str, ensure_ascii=False)


def configure_logger(
    logging_config: LoggingConfig,
    name: str = APP_LOGGER_NAME
) -> logging.Logger:
    """
    Attach handlers to a logger according to ``logging_config``.

    Args:
        logging_config: Level, output format and optional log file
        name: Logger to configure

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging_config.level)
    logger.handlers = []

    if logging_config.json_output:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, TEXT_DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if logging_config.file_path:
        directory = os.path.dirname(logging_config.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(logging_config.file_path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def _logging_config_from_env(base: LoggingConfig) -> LoggingConfig:
    overrides: Dict[str, Any] = {}
    if "LOG_LEVEL" in os.environ:
        overrides["level"] = os.environ["LOG_LEVEL"]
    if "LOG_JSON" in os.environ:
        overrides["json_output"] = os.environ["LOG_JSON"].lower() == "true"
    if "LOG_FILE" in os.environ:
        overrides["file_path"] = os.environ["LOG_FILE"]
    if not overrides:
        return base
    return LoggingConfig(**{**base.model_dump(), **overrides})


def get_app_logger() -> logging.Logger:
    """The package root logger, configured on first use."""
    logger = logging.getLogger(APP_LOGGER_NAME)
    if not logger.handlers:
        logger = configure_logger(_logging_config_from_env(get_config().logging))
    return logger


def anonymize_user_id(user_id: str) -> str:
    """Stable, non-reversible short form of a user id for log output."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return f"user_{digest[:12]}"


class LoggerAdapter(logging.LoggerAdapter):
    """Adds a fixed context to the ``data`` of every record it emits."""

    def __init__(self, logger: logging.Logger, context: Optional[Dict[str, Any]] = None):
        super().__init__(logger, context or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})
        extra["data"] = {**self.extra, **(extra.get("data") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'LoggerAdapter':
        return LoggerAdapter(self.logger, {**self.extra, **context})


def for_user(logger: logging.Logger, user_id: str) -> LoggerAdapter:
    """Adapter tagging records with the anonymised ``user_id``."""
    return LoggerAdapter(logger, {"user": anonymize_user_id(user_id)})


app_logger = get_app_logger()


def log_execution_time(logger: Optional[logging.Logger] = None) -> Callable[[F], F]:
    """
    Log how long a coroutine function takes.

    Successful calls are logged at debug level; failures are logged at
    warning level with the exception type and re-raised.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            log = logger or app_logger
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                log.warning(
                    f"{func.__qualname__} failed after {time.perf_counter() - started:.3f}s: "
                    f"{type(e).__name__}: {e}"
                )
                raise
            log.debug(f"{func.__qualname__} took {time.perf_counter() - started:.3f}s")
            return result

        return wrapper
    return decorator
