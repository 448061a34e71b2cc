"""
Structured logging for the operator.

Production writes one JSON object per event; development uses the console
renderer. Every event carries the operator identity, and events emitted while
a datacenter is being reconciled also carry that datacenter (see
``datacenter_context``).
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from cass_operator.config.settings import settings

REDACTED = "***"
SENSITIVE_KEYS = frozenset({"password", "superuser_password", "token", "tls_key"})

# Client libraries that log every request at INFO
NOISY_LOGGERS = ("kubernetes_asyncio", "httpx", "httpcore", "urllib3", "uvicorn.access")


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = settings.app_name
    event_dict["version"] = settings.app_version
    event_dict["environment"] = settings.environment
    event_dict.setdefault("watch_namespace", settings.watch_namespace)
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential values passed as event keys."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        level: Log level name; defaults to ``settings.log_level``
    """
    level = (level or settings.log_level).upper()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_operator_context,
        redact_credentials,
        structlog.processors.format_exc_info,
    ]

    if settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def datacenter_context(datacenter: str, generation: Optional[int] = None) -> Iterator[None]:
    """Bind the datacenter key to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(datacenter=datacenter, generation=generation):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured structlog logger.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    return structlog.get_logger(name)
