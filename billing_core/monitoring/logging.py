"""
Structured logging for the billing core.

Log calls name an event and pass context as keywords:

    logger.info("payment_awaiting_approval", transaction_id=42)

Everything is rendered as one JSON object per line on stderr so that CLI
progress on stdout stays readable. Fields bound with `payment_context()`
are merged into every event logged inside the block, including events from
tasks created inside it.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from billing_core.config import Settings, get_settings

QUIET_LOGGERS = ("httpx", "httpcore")


def _app_context(settings: Settings) -> structlog.types.Processor:
    app_fields = {"app_name": settings.app_name, "app_env": settings.app_env}

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.update(app_fields)
        return event_dict

    return add_app_context


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Route structlog through stdlib logging with a JSON formatter.

    Safe to call more than once; earlier root handlers are replaced.

    Args:
        settings: Optional settings override (defaults to cached settings)
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="@timestamp"),
            structlog.processors.format_exc_info,
            _app_context(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(_json_handler())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).debug(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )


@contextmanager
def payment_context(**fields: Any) -> Iterator[None]:
    """Bind payment fields (subject, transaction id, ...) to every log line in scope."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield
