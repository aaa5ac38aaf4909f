"""Structured logging and security audit events.

Log records carry their context in ``extra`` so the JSON formatter can
emit it as top-level fields for SIEM ingestion. Secret values must never
be passed in ``extra``; identifiers go through ``mask_identifier``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user supplied context
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, *, json_output: bool = True) -> None:
    """Configure root logging once for the process."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def mask_identifier(value: str | None) -> str | None:
    """Shorten an identifier for logs (client ids, object ids)."""
    if not value:
        return value
    return value[:8] + "..." if len(value) > 8 else value


def log_security_audit_event(
    event_type: str,
    *,
    target: str | None = None,
    action: str | None = None,
    result: str | None = None,
    **context: object,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Kind of event (config, issue, revoke, rotate).
        target: Role name or masked identity the event concerns.
        action: Action being performed.
        result: Outcome (success, failure, skipped).
        **context: Additional non-secret fields.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target": target,
            "action": action,
            "result": result,
            **context,
        },
    )
