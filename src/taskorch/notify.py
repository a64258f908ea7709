from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from taskorch.observability import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def notify_all(
        self, content: str, *, task_id: str | None = None, message_type: str = "chat"
    ) -> None: ...

    def broadcast(self, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes notices to the log; broadcasts go to an optional event hook."""

    def __init__(self, event_hook: Callable[[str, dict[str, Any]], None] | None = None) -> None:
        self.event_hook = event_hook

    def notify_all(
        self, content: str, *, task_id: str | None = None, message_type: str = "chat"
    ) -> None:
        logger.info("notice [%s] %s", message_type, content, extra={"task_id": task_id})

    def broadcast(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event_type, payload)


class SafeNotifier:
    """Fire-and-forget wrapper: delivery failures are logged, never raised."""

    def __init__(self, inner: Notifier) -> None:
        self.inner = inner

    def notify_all(
        self, content: str, *, task_id: str | None = None, message_type: str = "chat"
    ) -> None:
        try:
            self.inner.notify_all(content, task_id=task_id, message_type=message_type)
        except Exception:
            logger.exception("notification delivery failed (task=%s)", task_id)

    def broadcast(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self.inner.broadcast(event_type, payload)
        except Exception:
            logger.exception("broadcast failed (event=%s)", event_type)
