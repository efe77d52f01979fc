"""
Structured logging for the settlement service.

Every event is a JSON line carrying the service name and environment. Inside
``transaction_context`` it also carries the correlation id of the
orchestrator call and the transaction id. Settlement tokens are credentials
at the bank: any event field named ``token`` or ending in ``_token`` is
masked before rendering, so call sites can pass tokens as they are.
"""
import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from biopay.config import Settings, get_settings

EventDict = Dict[str, Any]

# Libraries whose INFO output is per-request noise
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def mask_token(token: Optional[str]) -> str:
    """Render a settlement token for logs, keeping only its last 4 characters."""
    if not token:
        return "<none>"
    return f"****{token[-4:]}"


def mask_settlement_tokens(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor masking token-valued fields."""
    for key, value in event_dict.items():
        if isinstance(value, str) and (key == "token" or key.endswith("_token")):
            if not value.startswith("****"):
                event_dict[key] = mask_token(value)
    return event_dict


def service_context(settings: Settings) -> Callable[[Any, str, EventDict], EventDict]:
    """Build a processor stamping the service name and environment on each event."""
    app_name = settings.app_name
    app_env = settings.app_env

    def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return add_service_context


@contextmanager
def transaction_context(transaction_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a fresh correlation id, and the transaction id when known, to every
    event logged inside the block.

    Yields:
        str: The correlation id, also stored on the transaction's events
    """
    correlation_id = str(uuid.uuid4())
    bound: EventDict = {"correlation_id": correlation_id}
    if transaction_id is not None:
        bound["transaction_id"] = transaction_id
    with structlog.contextvars.bound_contextvars(**bound):
        yield correlation_id


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route structlog and stdlib logging to JSON lines on stdout."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            mask_settlement_tokens,
            service_context(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        debug=settings.debug,
    )
