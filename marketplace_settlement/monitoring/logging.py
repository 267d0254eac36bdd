"""
Structured logging configuration.

Every settlement log line is JSON and carries the identifiers of what it is
about. Entry points (service operations, gateway events, worker passes) bind
them once with ``settlement_context``; modules below just call
``structlog.get_logger(__name__)`` and the ids are merged in from
contextvars.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from pythonjsonlogger import jsonlogger
from structlog.types import EventDict, Processor

from marketplace_settlement.config import Settings, get_settings

# Keys bound by settlement_context, in the order they are rendered
CONTEXT_KEYS = ("operation", "order_id", "payment_id", "event_id", "worker")

NOISY_LOGGERS = {
    "stripe": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


@contextmanager
def settlement_context(**ids: Any) -> Iterator[None]:
    """
    Bind settlement identifiers for everything logged inside the block.

    Unknown keys are rejected and None values are skipped, so callers can
    pass whatever ids they have. Bindings are per asyncio task and restored
    on exit.
    """
    unknown = set(ids) - set(CONTEXT_KEYS)
    if unknown:
        raise TypeError(f"Unknown logging context keys: {sorted(unknown)}")
    bound = {k: v for k, v in ids.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def order_context_keys(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """Render the settlement ids first so log lines line up when scanned."""
    ordered = {k: event_dict.pop(k) for k in CONTEXT_KEYS if k in event_dict}
    ordered.update(event_dict)
    return ordered


def app_context_processor(settings: Settings) -> Processor:
    """Processor stamping the app name and environment on each event."""
    app_name = settings.app_name
    app_env = settings.app_env

    def add_app_context(
        logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["app_name"] = app_name
        event_dict["app_env"] = app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Called once by each process entry point (the workers' ``main``).
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context_processor(settings),
            order_context_keys,
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

    # Records from third-party stdlib loggers come out as JSON too
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
