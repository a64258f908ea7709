from __future__ import annotations

from pathlib import Path

from taskorch.config import StorageConfig
from taskorch.store.base import TaskRepository
from taskorch.store.jsonfile import JsonFileTaskRepository
from taskorch.store.memory import InMemoryTaskRepository
from taskorch.store.retry import BusyRetryPolicy, call_with_busy_retry


def open_repository(config: StorageConfig, root: Path) -> TaskRepository:
    if config.backend == "memory":
        return InMemoryTaskRepository()
    path = Path(config.path)
    if not path.is_absolute():
        path = root / path
    return JsonFileTaskRepository(path, lock_timeout_seconds=config.lock_timeout_seconds)


__all__ = [
    "BusyRetryPolicy",
    "InMemoryTaskRepository",
    "JsonFileTaskRepository",
    "TaskRepository",
    "call_with_busy_retry",
    "open_repository",
]
