"""Logging utilities for the booking assistant.

Module loggers live under the ``booking.`` namespace. The ``log_*`` helpers
emit request-scoped structured lines for the HTTP layer so every log line of
one inbound request can be tied together by its request id.
"""

import json
import logging
import uuid
from typing import Optional


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger, configuring a console handler on first use."""
    logger_name = name or "booking"
    logger = logging.getLogger(logger_name)

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

    return logger


def generate_request_id() -> str:
    """Generate a unique request identifier for correlating logs."""

    return str(uuid.uuid4())


def _format_channel_message(msg: str, channel: str) -> str:
    return f"[BOOKING-{channel.upper()}] {msg}"


def _format_structured_message(
    message: str,
    request_id: Optional[str] = None,
    extra: Optional[dict] = None,
) -> str:
    """Format a log message as a JSON string."""

    payload: dict = {"message": message}
    if request_id is not None:
        payload["request_id"] = request_id
    if extra:
        payload["extra"] = extra
    return json.dumps(payload, default=str)


def _log(level: int, msg: str, channel: str, request_id: Optional[str], extra: dict) -> None:
    logger = get_logger(f"booking.{channel}")
    structured = _format_structured_message(
        _format_channel_message(msg, channel),
        request_id=request_id,
        extra=extra or None,
    )
    logger.log(level, structured)


def log_info(
    msg: str,
    request_id: Optional[str] = None,
    channel: str = "api",
    **extra: object,
) -> None:
    """Log an informational message for request-level activity."""

    _log(logging.INFO, msg, channel, request_id, extra)


def log_warn(
    msg: str,
    request_id: Optional[str] = None,
    channel: str = "api",
    **extra: object,
) -> None:
    """Log a warning message for request-level activity."""

    _log(logging.WARNING, msg, channel, request_id, extra)


def log_error(
    msg: str,
    request_id: Optional[str] = None,
    channel: str = "api",
    **extra: object,
) -> None:
    """Log an error message for request-level activity."""

    _log(logging.ERROR, msg, channel, request_id, extra)
