"""
Structured Logging — JSON output with dispatch correlation.

Every record emitted while a dispatch cycle is active carries the cycle ID,
channel and thread ID through context variables, so a single message can be
followed from ingress to delivery across the detached background task.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variables for dispatch correlation
cycle_id_var: ContextVar[str] = ContextVar("cycle_id", default="")
channel_var: ContextVar[str] = ContextVar("channel", default="")
thread_id_var: ContextVar[str] = ContextVar("thread_id", default="")

_LOGGER_ROOT = "chatrelay"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add context vars if set
        cycle_id = cycle_id_var.get("")
        if cycle_id:
            log_entry["cycle_id"] = cycle_id
        channel = channel_var.get("")
        if channel:
            log_entry["channel"] = channel
        thread_id = thread_id_var.get("")
        if thread_id:
            log_entry["thread_id"] = thread_id

        # Add exception info
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class ContextFilter(logging.Filter):
    """Appends dispatch context to plain-text records."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = []
        if cycle_id_var.get(""):
            parts.append(f"cycle={cycle_id_var.get()}")
        if thread_id_var.get(""):
            parts.append(f"thread={thread_id_var.get()}")
        record.dispatch_context = f" [{' '.join(parts)}]" if parts else ""
        return True


_configured = False


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Install a stdout handler on the package logger (idempotent)."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.addFilter(ContextFilter())
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s%(dispatch_context)s: %(message)s"
        ))

    root = logging.getLogger(_LOGGER_ROOT)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _configured = True


def set_dispatch_context(
    cycle_id: str = "",
    channel: str = "",
    thread_id: Optional[str] = None,
) -> None:
    """Set context variables for the current dispatch cycle."""
    if cycle_id:
        cycle_id_var.set(cycle_id)
    if channel:
        channel_var.set(channel)
    if thread_id:
        thread_id_var.set(thread_id)
