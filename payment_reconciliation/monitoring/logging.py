"""
Structured logging for the reconciliation service.

Events are rendered as JSON lines through structlog, with the request id
bound by the API middleware and Paystack secrets masked before rendering.
"""
import logging
import re
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_reconciliation.config import get_settings

_SECRET_PATTERN = re.compile(r"\b(sk_(?:test|live)_)[A-Za-z0-9]+")
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")


def mask_secret(value: str) -> str:
    """Replace the body of any Paystack secret key in ``value`` with asterisks."""
    return _SECRET_PATTERN.sub(r"\1****", value)


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and "sk_" in value:
            event_dict[key] = mask_secret(value)
    return event_dict


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure structlog and the root logger.

    Args:
        level: Override for ``settings.log_level``
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party records (uvicorn, sqlalchemy) still go out as JSON
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info("logging_configured", log_level=level)
