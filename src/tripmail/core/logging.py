"""Structured logging for the travel email engine.

structlog renders JSON to stdout for services and a console format for the
CLI. Two processors are specific to email handling:

- add_correlation_id: every event logged while one email is processed
  carries that email's id as `email_id` (set with set_correlation_id)
- redact_email_fields: email bodies and prompts are reduced to their length,
  and subjects/senders to a short prefix plus a stable hash, so logs can be
  correlated without holding traveller details

Usage:
    from tripmail.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    set_correlation_id(message_id)
    logger.info("email_classified", email_type="hotel", sender=from_address)
"""

import logging
import sys
from contextvars import ContextVar
from hashlib import sha256
from typing import Any

import structlog

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Logged as their length only
EMAIL_TEXT_KEYS = frozenset({"body", "email_content", "prompt_text", "raw_body"})
# Logged as a visible prefix plus a hash
EMAIL_HEADER_KEYS = frozenset({"subject", "sender", "from_address"})
HEADER_VISIBLE_CHARS = 24

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Chatty at DEBUG; only shown when the engine itself runs at DEBUG
_NOISY_LIBRARIES = ("aiosqlite",)


def set_correlation_id(correlation_id: str | None) -> None:
    """Tag later log events in this context with an email id (None clears)."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict.setdefault("email_id", correlation_id)
    return event_dict


def redact_header(value: str) -> str:
    """Short visible prefix plus a stable hash, e.g. 'UPCOMING: PS | ATL to...' (h:3f2a9c)."""
    digest = sha256(value.encode("utf-8")).hexdigest()[:6]
    visible = value if len(value) <= HEADER_VISIBLE_CHARS else value[:HEADER_VISIBLE_CHARS] + "..."
    return f"{visible} (h:{digest})"


def redact_email_fields(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor keeping email content out of log output."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if key in EMAIL_TEXT_KEYS:
            event_dict[key] = f"<{len(value)} chars>"
        elif key in EMAIL_HEADER_KEYS and value:
            event_dict[key] = redact_header(value)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (any case)
        json_output: JSON lines if True, coloured console output if False

    Raises:
        ValueError: If log_level is not a known level name
    """
    level = _LEVELS.get(log_level.upper())
    if level is None:
        raise ValueError(f"Unknown log level '{log_level}'. Expected one of: {', '.join(_LEVELS)}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
        redact_email_fields,
    ]

    if json_output:
        renderer: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module; pass __name__."""
    return structlog.get_logger(name)
