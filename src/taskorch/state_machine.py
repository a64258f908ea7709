from __future__ import annotations

from typing import Any

from taskorch.errors import InvalidTransitionError, TaskNotFoundError, WorkflowInterrupted
from taskorch.models import TERMINAL_STATUSES, Subtask, Task, TaskStatus, to_row, utcnow_iso
from taskorch.notify import Notifier
from taskorch.observability import get_logger
from taskorch.store.base import TaskRepository
from taskorch.workflow_store import WorkflowStore

logger = get_logger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    "inbox": frozenset({"planned", "in_progress", "pending", "cancelled"}),
    "planned": frozenset({"collaborating", "in_progress", "pending", "cancelled"}),
    "collaborating": frozenset({"planned", "in_progress", "pending", "cancelled"}),
    "in_progress": frozenset({"review", "inbox", "pending", "cancelled"}),
    "review": frozenset({"done", "in_progress", "pending", "cancelled"}),
    "pending": frozenset({"inbox", "planned", "in_progress", "review", "cancelled"}),
    "done": frozenset(),
    "cancelled": frozenset(),
}

# A parent may close review once every collaboration child reached one of these.
CHILD_SETTLED_STATUSES = frozenset({"review", "done", "cancelled"})


class TaskStateMachine:
    """Owns task status writes and their side effects.

    A transition writes status and timestamps, appends a task log line and
    broadcasts ``task_update`` without yielding to the event loop in between.
    """

    def __init__(self, repository: TaskRepository, store: WorkflowStore, notifier: Notifier) -> None:
        self.repository = repository
        self.store = store
        self.notifier = notifier

    def get(self, task_id: str) -> Task:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def ensure_active(self, task_id: str, allowed: frozenset[str]) -> Task:
        """Raise ``WorkflowInterrupted`` once the task is gone, stopped or left ``allowed``."""
        task = self.repository.get_task(task_id)
        if task is None:
            raise WorkflowInterrupted(task_id, "deleted")
        mode = self.store.stop_mode(task_id)
        if mode is not None:
            raise WorkflowInterrupted(task_id, f"stop requested ({mode})")
        if task.status not in allowed:
            raise WorkflowInterrupted(task_id, task.status)
        return task

    @staticmethod
    def can_transition(from_status: str, to_status: str) -> bool:
        return to_status in TRANSITIONS.get(from_status, frozenset())

    def transition(
        self,
        task_id: str,
        to_status: TaskStatus,
        *,
        reason: str = "",
        **fields: Any,
    ) -> Task:
        task = self.get(task_id)
        from_status = task.status
        if from_status == to_status:
            if fields:
                task = self.repository.update_task(task_id, **fields)
            return task
        if not self.can_transition(from_status, to_status):
            raise InvalidTransitionError(task_id, from_status, to_status)

        changes: dict[str, Any] = {"status": to_status, **fields}
        now = utcnow_iso()
        if to_status == "in_progress":
            changes.setdefault("started_at", now)
        if to_status == "done":
            changes.setdefault("completed_at", now)
        updated = self.repository.update_task(task_id, **changes)

        message = f"Status {from_status} -> {to_status}"
        if reason:
            message = f"{message} ({reason})"
        self.repository.append_task_log(task_id, "system", message)
        self.notifier.broadcast("task_update", to_row(updated))
        logger.info("task %s: %s", task_id, message, extra={"task_id": task_id})

        if to_status in TERMINAL_STATUSES:
            self.store.end_session(task_id)
        return updated

    def unfinished_subtasks(self, task_id: str) -> list[Subtask]:
        return [
            subtask for subtask in self.repository.list_subtasks(task_id) if subtask.status != "done"
        ]

    def children(self, task_id: str) -> list[Task]:
        return self.repository.list_tasks(source_task_id=task_id)

    def children_blocking_review(self, task_id: str) -> list[Task]:
        return [
            child for child in self.children(task_id) if child.status not in CHILD_SETTLED_STATUSES
        ]

    def occupy_agent(self, agent_id: str, task_id: str) -> None:
        self.repository.update_agent(agent_id, status="working", current_task_id=task_id)
        self.notifier.broadcast("agent_status", {"agent_id": agent_id, "status": "working"})

    def release_agent(self, agent_id: str | None, task_id: str | None = None) -> None:
        if not agent_id:
            return
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            return
        if task_id is not None and agent.current_task_id not in (None, task_id):
            return
        self.repository.update_agent(agent_id, status="idle", current_task_id=None)
        self.notifier.broadcast("agent_status", {"agent_id": agent_id, "status": "idle"})

    def log(self, task_id: str, message: str, *, kind: str = "system") -> None:
        self.repository.append_task_log(task_id, kind, message)
