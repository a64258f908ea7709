from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock

_task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)
_round_var: ContextVar[int | None] = ContextVar("round_no", default=None)

ROOT_LOGGER = "taskorch"


@contextmanager
def task_context(task_id: str | None, round_no: int | None = None) -> Iterator[None]:
    task_token = _task_id_var.set(task_id)
    round_token = _round_var.set(round_no)
    try:
        yield
    finally:
        _round_var.reset(round_token)
        _task_id_var.reset(task_token)


class _JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line with correlation fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        task_id = getattr(record, "task_id", None) or _task_id_var.get(None)
        if task_id:
            payload["task_id"] = task_id
        round_no = getattr(record, "round_no", None) or _round_var.get(None)
        if round_no is not None:
            payload["round"] = round_no
        if record.exc_info and record.exc_info[1] is not None:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


_configured = False
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_logging."""
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    global _configured
    with _configure_lock:
        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level.upper() if isinstance(level, str) else level)
        if _configured:
            return
        has_json_handler = any(
            isinstance(getattr(handler, "formatter", None), _JsonFormatter)
            for handler in root.handlers
        )
        if not has_json_handler:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(_JsonFormatter())
            root.addHandler(handler)
        _configured = True
