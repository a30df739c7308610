"""Structured JSON logging for Tally-Engine."""

import logging
import json
import sys
from datetime import datetime, timezone

# Extra fields callers may attach with ``logger.info(..., extra={...})``
CONTEXT_FIELDS = ("pool_id", "subscription_id", "stack_id", "consumer_uuid")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(level: str = "INFO", json_lines: bool = True) -> None:
    """Configure logging for the tally_engine logger tree.

    Safe to call more than once; the previous handler is replaced.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_lines:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger("tally_engine")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger scoped under tally_engine."""
    return logging.getLogger(f"tally_engine.{name}")
