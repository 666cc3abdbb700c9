"""
Logging configuration for the SmartWait service.

structlog is configured once at start-up on top of the standard library
logging tree, so records from uvicorn, SQLAlchemy and httpx go through the
same handlers as application events. Phone numbers and Twilio credentials
are masked before anything is rendered.
"""

import logging
import logging.config
import re
import sys
from typing import Any, Dict, MutableMapping, Optional

import structlog

from smartwait.core.config import Settings, get_settings
from smartwait.utils.phone import mask_phone


SENSITIVE_KEYS = {"auth_token", "password", "token", "authorization"}

PHONE_KEYS = {"phone", "phone_number", "to"}

_PHONE_IN_TEXT = re.compile(r"\+?\d[\d\s\-\(\)]{8,}\d")


def get_log_level(level_name: str) -> int:
    """Translate a level name from settings into a logging constant"""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        return level
    return logging.INFO


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that hides phone numbers and secrets"""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = "[REDACTED]"
        elif key in PHONE_KEYS and isinstance(value, str):
            event_dict[key] = mask_phone(value)
    return event_dict


class SecurityFilter(logging.Filter):
    """Mask phone numbers in plain stdlib records (third-party loggers)"""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str) and not record.args:
            record.msg = _PHONE_IN_TEXT.sub(lambda match: mask_phone(match.group(0)), record.msg)
        return True


def _build_config(settings: Settings, renderer: Any, shared_processors: list) -> Dict[str, Any]:
    log_level = settings.LOG_LEVEL.upper()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "filters": {
            "security": {
                "()": SecurityFilter,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "structured",
                "stream": sys.stdout,
                "filters": ["security"],
            },
        },
        "loggers": {
            "": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "INFO" if settings.DEBUG else "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
            "redis": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the stdlib logging tree"""
    settings = settings or get_settings()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_sensitive_fields,
    ]

    if settings.ENVIRONMENT == "production":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    logging.config.dictConfig(_build_config(settings, renderer, shared_processors))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).debug(
        "Logging configured",
        environment=settings.ENVIRONMENT,
        level=settings.LOG_LEVEL,
    )


def bind_correlation_id(correlation_id: str) -> None:
    """Attach a correlation id to every log event in the current context"""
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()


__all__ = [
    "setup_logging",
    "get_log_level",
    "mask_sensitive_fields",
    "SecurityFilter",
    "bind_correlation_id",
    "clear_log_context",
]
