"""structlog setup for ParcelGate.

Every entry carries the bound request id, so one authentication decision can
be followed through resolver, gate and metering. Call sites log key ids and
hints only; ``redact_credentials`` is the backstop for fields that would
otherwise put a raw API key, session token or Authorization value on stdout.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

# Event fields that may hold a credential value.
CREDENTIAL_FIELDS: frozenset[str] = frozenset(
    {"api_key", "raw_key", "key", "token", "session_token", "authorization", "webhook_token"}
)
REDACTED = "[REDACTED]"
_VISIBLE_TAIL = 4


def mask_credential(value: Any) -> str:
    """Mask a credential, keeping the same 4-character tail as ``masked_key``."""
    if not isinstance(value, str) or len(value) <= _VISIBLE_TAIL * 2:
        return REDACTED
    return f"{REDACTED}...{value[-_VISIBLE_TAIL:]}"


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for name in CREDENTIAL_FIELDS.intersection(event_dict):
        if event_dict[name] is not None:
            event_dict[name] = mask_credential(event_dict[name])
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when True, coloured console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "parcelgate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    """Bind ``request_id`` to every entry logged from the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


# main.py reconfigures from the environment.
configure_logging()
