"""Structured JSON logging for the scheduler.

Two pieces of context travel through contextvars instead of ``extra``:
``tick_id`` (bound for a whole evaluation pass) and ``schedule_id`` (bound
while one schedule is evaluated and fired).  Every record emitted in that
scope carries them, including records from the stores and the dispatcher.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

# Bound at the start of every scheduler tick; "-" outside a tick
_tick_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "tick_id", default="-"
)
_schedule_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "schedule_id", default=None
)

# Fields that belong to LogRecord itself; stripped from the "extra" dump
_STDLIB_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
})


class JsonFormatter(logging.Formatter):
    """One compact JSON object per log line.

    ``schedule_id`` comes from the bound schedule context unless the call
    site passes its own through ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        data: dict = {
            "ts":      datetime.fromtimestamp(record.created, tz=timezone.utc)
                       .strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level":   record.levelname,
            "logger":  record.name,
            "msg":     record.message,
            "tick_id": _tick_id_var.get(),
        }
        schedule_id = _schedule_id_var.get()
        if schedule_id is not None:
            data["schedule_id"] = schedule_id

        for key, val in record.__dict__.items():
            if key not in _STDLIB_FIELDS and not key.startswith("_"):
                data[key] = val

        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


def setup_json_logging(level: str = "INFO") -> None:
    """Replace the root logger's handlers with a JSON formatter on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def set_tick_id(tick_id: str) -> None:
    """Bind a tick_id to the current async context."""
    _tick_id_var.set(tick_id)


def get_tick_id() -> str:
    return _tick_id_var.get()


@contextmanager
def schedule_context(schedule_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with *schedule_id*."""
    token = _schedule_id_var.set(schedule_id)
    try:
        yield
    finally:
        _schedule_id_var.reset(token)


def get_schedule_id() -> str | None:
    return _schedule_id_var.get()
