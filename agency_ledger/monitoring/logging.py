"""
Structured logging for the ledger processes.

structlog renders JSON through the stdlib root logger. Every event carries
the service, environment and process component; events logged inside a
transition also carry the operation and the ids bound by
:func:`transition_context`.
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from agency_ledger.config import Settings, get_settings

# Loggers that drown out transition events at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


class ServiceContext:
    """Processor stamping service, environment and component on every event."""

    def __init__(self, settings: Settings, component: str) -> None:
        self.fields = {
            "service": settings.app_name,
            "app_env": settings.app_env,
            "component": component,
        }

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in self.fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def stringify_ledger_values(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Render UUIDs, timestamps and status enums as plain JSON strings."""
    for key, value in event_dict.items():
        if isinstance(value, uuid.UUID):
            event_dict[key] = str(value)
        elif isinstance(value, (datetime, date)):
            event_dict[key] = value.isoformat()
        elif isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


@contextmanager
def transition_context(operation: str, **ids: Any) -> Iterator[None]:
    """
    Bind the operation name and entity ids for the duration of a transition.

    Example:
        with transition_context("approve_membership", membership_id=membership_id):
            ...
    """
    bound = {key: value for key, value in ids.items() if value is not None}
    with structlog.contextvars.bound_contextvars(operation=operation, **bound):
        yield


def setup_logging(settings: Optional[Settings] = None, component: str = "api") -> None:
    """
    Configure structlog and the stdlib root handler.

    Args:
        settings: Source of log level, service name and SQL echo
        component: Process name stamped on every event (api, outbox, maintenance)
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            ServiceContext(settings, component),
            stringify_ledger_values,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    # Records from stdlib loggers; structlog events arrive already rendered
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        component=component,
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
