"""
Structured logging configuration.

Every process (API, billing worker, outbox publisher, snapshot worker)
logs JSON through structlog. Request ids are bound by the API middleware;
billing attempts bind the subscription they work on, so every line an
attempt emits (ledger, provider, retry policy) carries it.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from native_payments.config import get_settings

# Values that must never reach a log sink
SENSITIVE_KEYS = frozenset(
    {
        "payment_token",
        "client_secret",
        "card_number",
        "cvc",
        "secret_key",
        "transaction_key",
        "authorization",
    }
)

_component = "api"


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp the application, environment and process component on each event."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict.setdefault("component", _component)
    return event_dict


def redact_payment_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask tokens and credentials passed as log fields.

    Nested dicts (provider payloads, metadata) are masked one level deep.
    """
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, dict):
            event_dict[key] = {
                k: ("***" if str(k).lower() in SENSITIVE_KEYS and v else v)
                for k, v in value.items()
            }
    return event_dict


@contextmanager
def billing_log_context(
    subscription_id: str, correlation_id: Optional[str] = None
) -> Iterator[None]:
    """Bind a billing attempt's identifiers for the duration of the block."""
    bound = {"subscription_id": subscription_id}
    if correlation_id:
        bound["correlation_id"] = correlation_id
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def setup_logging(component: str = "api") -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        component: Process name added to every event (``api``,
            ``billing-worker``, ``outbox-publisher``, ``snapshot-worker``)
    """
    global _component
    _component = component
    settings = get_settings()

    if settings.debug and settings.app_env == "development":
        renderer: Any = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            redact_payment_secrets,
            add_app_context,
            renderer,
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

    # Third-party libraries log through the stdlib; keep their lines JSON too
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        component=component,
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
