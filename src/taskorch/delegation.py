from __future__ import annotations

import random
from dataclasses import dataclass

from taskorch.config import DelegationConfig
from taskorch.directory import AgentDirectory
from taskorch.models import Subtask, Task, new_id, to_row, utcnow_iso
from taskorch.notify import Notifier
from taskorch.observability import get_logger
from taskorch.prompts import build_delegation_description
from taskorch.state_machine import TaskStateMachine
from taskorch.store.base import TaskRepository
from taskorch.subtasks import waiting_reason
from taskorch.workflow_store import WorkflowStore, WorkflowToken

logger = get_logger(__name__)

COLLABORATION_PREFIX = "[Collaboration]"
DELEGATION_FAILED_REASON = "Delegated task failed"
CHILD_ACTIVE_STATUSES = frozenset({"planned", "in_progress", "collaborating", "pending"})
CHILD_SUCCESS_STATUSES = frozenset({"review", "done"})


@dataclass(slots=True)
class DelegationStep:
    """Result of advancing a parent's queue: the child to run next, or a drained queue."""

    parent_id: str
    child: Task | None = None
    drained: bool = False
    all_complete: bool = False


class DelegationQueue:
    """Sequential per-parent dispatch of foreign-department subtasks into child tasks.

    At most one child is open per parent at a time. The lineage of an open
    child is held as a ``WorkflowToken`` in the workflow store; when it is
    missing (after a restart) it is rebuilt from the child's
    ``source_task_id``, so both paths advance the queue the same way.
    """

    def __init__(
        self,
        repository: TaskRepository,
        store: WorkflowStore,
        state: TaskStateMachine,
        directory: AgentDirectory,
        notifier: Notifier,
        config: DelegationConfig,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.store = store
        self.state = state
        self.directory = directory
        self.notifier = notifier
        self.config = config
        self._rng = rng or random.Random()

    def pending_subtasks(self, parent_id: str) -> list[Subtask]:
        """Foreign subtasks not yet delegated, by target department order then creation."""
        pending = [
            subtask
            for subtask in self.repository.list_subtasks(parent_id)
            if subtask.target_department_id and not subtask.delegated_task_id
            and subtask.status != "done"
        ]
        return sorted(
            pending,
            key=lambda subtask: (
                self.directory.sort_order(subtask.target_department_id),
                subtask.created_at,
            ),
        )

    def open_children(self, parent_id: str) -> list[Task]:
        return [
            child
            for child in self.repository.list_tasks(source_task_id=parent_id)
            if child.status in CHILD_ACTIVE_STATUSES
        ]

    def process_delegations(self, parent_id: str) -> DelegationStep:
        parent = self.repository.get_task(parent_id)
        pending = self.pending_subtasks(parent_id)
        if parent is None or not pending:
            return DelegationStep(parent_id)
        if not self.store.try_acquire_delegation(parent_id):
            return DelegationStep(parent_id)
        self.store.reset_completion_notice(parent_id)
        departments = {subtask.target_department_id for subtask in pending}
        self.notifier.notify_all(
            f"Delegating {len(pending)} external-department subtasks for '{parent.title}' "
            "sequentially by department.",
            task_id=parent_id,
        )
        self.state.log(
            parent_id,
            f"Subtask delegation mode: sequential (queues={len(departments)}, items={len(pending)})",
        )
        return self.dispatch_next(parent_id)

    def dispatch_next(self, parent_id: str) -> DelegationStep:
        """Open the child for the next pending subtask, or release the guard once drained."""
        parent = self.repository.get_task(parent_id)
        if parent is None:
            self.store.release_delegation(parent_id)
            return DelegationStep(parent_id, drained=True)
        for subtask in self.pending_subtasks(parent_id):
            leader = self.directory.find_department_leader(subtask.target_department_id)
            if leader is None:
                self._complete_without_leader(subtask)
                continue
            child = self._open_child(parent, subtask, leader.id)
            return DelegationStep(parent_id, child=child)
        return self._drain(parent)

    def _open_child(self, parent: Task, subtask: Subtask, leader_id: str) -> Task:
        department_id = subtask.target_department_id
        department_name = self.directory.department_name(department_id)
        title = subtask.title
        if not title.startswith(COLLABORATION_PREFIX):
            title = f"{COLLABORATION_PREFIX} {title}"
        child = self.repository.create_task(
            Task(
                id=new_id(),
                title=title,
                description=build_delegation_description(
                    parent, subtask, department_name=department_name
                ),
                status="planned",
                department_id=department_id,
                assigned_agent_id=leader_id,
                source_task_id=parent.id,
                project_path=parent.project_path,
            )
        )
        self.repository.append_task_log(
            child.id, "system", f"Delegated from task {parent.id} (subtask {subtask.id})"
        )
        self.notifier.broadcast("task_update", to_row(child))
        updated = self.repository.update_subtask(
            subtask.id, status="in_progress", delegated_task_id=child.id, blocked_reason=None
        )
        self.notifier.broadcast("subtask_update", to_row(updated))
        self.store.set_next_delegation_callback(child.id, WorkflowToken(parent.id, "delegation"))
        self.state.log(
            parent.id, f"Subtask delegated to {department_name}: {subtask.title} (child={child.id})"
        )
        logger.info("delegated subtask %s to %s (child=%s)", subtask.id, department_id, child.id)
        return child

    def _complete_without_leader(self, subtask: Subtask) -> None:
        department_name = self.directory.department_name(subtask.target_department_id)
        updated = self.repository.update_subtask(
            subtask.id, status="done", completed_at=utcnow_iso(), blocked_reason=None
        )
        self.notifier.broadcast("subtask_update", to_row(updated))
        self.state.log(
            subtask.task_id,
            f"No leader in {department_name}; subtask completed without delegation: {subtask.title}",
        )

    def _drain(self, parent: Task) -> DelegationStep:
        self.store.release_delegation(parent.id)
        all_complete = not self.state.unfinished_subtasks(parent.id)
        if all_complete and self.store.claim_completion_notice(parent.id):
            self.notifier.notify_all(
                f"All subtasks for '{parent.title}' (including cross-department collaboration) "
                "are complete.",
                task_id=parent.id,
            )
        return DelegationStep(parent.id, drained=True, all_complete=all_complete)

    def on_child_settled(self, child_id: str, *, succeeded: bool) -> WorkflowToken | None:
        """Record a settled child on its subtask and return the token to resume its parent."""
        token = self.store.pop_delegation_token(child_id)
        child = self.repository.get_task(child_id)
        if token is None:
            if child is None or not child.source_task_id:
                return None
            token = WorkflowToken(child.source_task_id, "delegation")
            logger.info("rebuilt delegation token for child %s from store", child_id)
        for subtask in self.repository.list_subtasks(token.task_id):
            if subtask.delegated_task_id != child_id:
                continue
            if succeeded:
                changes = {"status": "done", "completed_at": utcnow_iso(), "blocked_reason": None}
            else:
                changes = {"status": "blocked", "blocked_reason": DELEGATION_FAILED_REASON}
            updated = self.repository.update_subtask(subtask.id, **changes)
            self.notifier.broadcast("subtask_update", to_row(updated))
        return token

    def next_delay(self, *, succeeded: bool) -> float:
        if not succeeded:
            return self.config.failure_delay_seconds
        return self._rng.uniform(
            self.config.success_delay_min_seconds,
            max(self.config.success_delay_min_seconds, self.config.success_delay_max_seconds),
        )

    def advance(self, token: WorkflowToken) -> DelegationStep:
        """Dispatch the next subtask for ``token``'s parent, re-arming the guard if needed."""
        self.store.try_acquire_delegation(token.task_id)
        return self.dispatch_next(token.task_id)

    def reconcile(self, parent_id: str | None = None) -> int:
        """Sync delegated subtasks with the status of their child tasks; returns rows changed."""
        if parent_id is not None:
            children = self.repository.list_tasks(source_task_id=parent_id)
        else:
            children = [task for task in self.repository.list_tasks() if task.source_task_id]
        changed = 0
        for child in children:
            if not child.source_task_id or not child.department_id:
                continue
            subtask = self._linked_subtask(child)
            if subtask is None:
                continue
            if child.status in CHILD_SUCCESS_STATUSES:
                target = {"status": "done", "blocked_reason": None}
                if subtask.status != "done":
                    target["completed_at"] = child.completed_at or utcnow_iso()
            elif child.status in CHILD_ACTIVE_STATUSES:
                target = {"status": "in_progress", "blocked_reason": None}
                if self.store.delegation_token(child.id) is None:
                    self.store.set_next_delegation_callback(
                        child.id, WorkflowToken(child.source_task_id, "delegation")
                    )
            else:
                target = {"status": "blocked", "blocked_reason": DELEGATION_FAILED_REASON}
            target["delegated_task_id"] = child.id
            if all(getattr(subtask, key) == value for key, value in target.items()):
                continue
            updated = self.repository.update_subtask(subtask.id, **target)
            self.notifier.broadcast("subtask_update", to_row(updated))
            changed += 1
        return changed

    def _linked_subtask(self, child: Task) -> Subtask | None:
        subtasks = self.repository.list_subtasks(child.source_task_id or "")
        for subtask in subtasks:
            if subtask.delegated_task_id == child.id:
                return subtask
        for subtask in subtasks:
            if subtask.target_department_id == child.department_id and not subtask.delegated_task_id:
                return subtask
        return None

    def retry_failed(self, parent_id: str) -> int:
        """Unlink subtasks whose child failed so the next dispatch delegates them again."""
        retried = 0
        for subtask in self.repository.list_subtasks(parent_id):
            if subtask.status != "blocked" or not subtask.delegated_task_id:
                continue
            child = self.repository.get_task(subtask.delegated_task_id)
            if child is not None and child.status not in ("inbox", "cancelled"):
                continue
            if child is not None and child.status == "inbox":
                self.state.transition(child.id, "cancelled", reason="delegation retried")
            updated = self.repository.update_subtask(
                subtask.id,
                delegated_task_id=None,
                blocked_reason=waiting_reason(
                    self.directory.department_name(subtask.target_department_id)
                ),
            )
            self.notifier.broadcast("subtask_update", to_row(updated))
            retried += 1
        if retried:
            self.state.log(parent_id, f"Retrying {retried} failed delegations")
        return retried
