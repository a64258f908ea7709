from __future__ import annotations

from dataclasses import dataclass

from taskorch.directory import AgentDirectory
from taskorch.models import Subtask, SubtaskStatus, Task, new_id, to_row, utcnow_iso
from taskorch.notify import Notifier
from taskorch.observability import get_logger
from taskorch.review.memo import collapse_whitespace, subtask_title_from_note
from taskorch.store.base import TaskRepository
from taskorch.supervisor.output import SubtaskMarker

logger = get_logger(__name__)

REVISION_PREFIX = "[Review Revision]"
REVISION_CONSOLIDATION_TITLE = f"{REVISION_PREFIX} Consolidate updates and resubmit for review"
PLAN_KICKOFF_TITLE = "Finalize detailed execution plan from planned meeting"
PLAN_CONSOLIDATION_TITLE = "Consolidate department deliverables and finalize package"
MAX_SEEDED_NOTES = 8


def waiting_reason(department_name: str) -> str:
    return f"Waiting for {department_name} collaboration"


@dataclass(slots=True)
class _SeedItem:
    title: str
    description: str
    target_department_id: str | None = None


def _unique_notes(notes: list[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for note in notes:
        cleaned = collapse_whitespace(note)
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        unique.append(cleaned)
        if len(unique) >= MAX_SEEDED_NOTES:
            break
    return unique


class SubtaskPlanner:
    """Creates subtasks from meeting output and applies provider subtask markers."""

    def __init__(
        self, repository: TaskRepository, directory: AgentDirectory, notifier: Notifier
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.notifier = notifier

    def _insert(self, task: Task, item: _SeedItem) -> Subtask:
        status: SubtaskStatus = "pending"
        assignee = task.assigned_agent_id
        blocked_reason = None
        if item.target_department_id:
            status = "blocked"
            leader = self.directory.find_department_leader(item.target_department_id)
            assignee = leader.id if leader else None
            blocked_reason = waiting_reason(self.directory.department_name(item.target_department_id))
        subtask = self.repository.create_subtask(
            Subtask(
                id=new_id(),
                task_id=task.id,
                title=item.title,
                description=item.description,
                status=status,
                assigned_agent_id=assignee,
                target_department_id=item.target_department_id,
                blocked_reason=blocked_reason,
            )
        )
        self.notifier.broadcast("subtask_update", to_row(subtask))
        return subtask

    def seed_review_revision_subtasks(self, task: Task, notes: list[str]) -> int:
        """One subtask per revision note plus a consolidation subtask; open duplicates skipped."""
        items: list[_SeedItem] = []
        for note in _unique_notes(notes):
            title = subtask_title_from_note(note) or "Additional revision item"
            items.append(
                _SeedItem(
                    title=f"{REVISION_PREFIX} {title}",
                    description=f"Apply the review-meeting revision request: {note}",
                    target_department_id=self.directory.route_department(note, task.department_id),
                )
            )
        items.append(
            _SeedItem(
                title=REVISION_CONSOLIDATION_TITLE,
                description="Collect revision outputs and prepare the re-review submission package.",
            )
        )
        open_titles = {
            subtask.title
            for subtask in self.repository.list_subtasks(task.id)
            if subtask.status != "done"
        }
        created = 0
        for item in items:
            if item.title in open_titles:
                continue
            self._insert(task, item)
            open_titles.add(item.title)
            created += 1
        return created

    def seed_approved_plan_subtasks(self, task: Task, action_items: list[str]) -> int:
        """Initial breakdown after a planning meeting; no-op when the task has subtasks."""
        if self.repository.list_subtasks(task.id):
            return 0
        items = [
            _SeedItem(
                title=PLAN_KICKOFF_TITLE,
                description=(
                    "Finalize detailed task sequence and deliverable criteria from the "
                    f"planned meeting. ({task.title})"
                ),
            )
        ]
        foreign: list[str] = []
        for note in _unique_notes(action_items):
            target = self.directory.route_department(note, task.department_id)
            if target and target not in foreign:
                foreign.append(target)
            title = subtask_title_from_note(note) or "Additional improvement item"
            items.append(
                _SeedItem(
                    title=f"[Plan Item] {title}",
                    description=(
                        "Convert this planned-meeting improvement note into an executable "
                        f"task: {note}"
                    ),
                    target_department_id=target,
                )
            )
        for department_id in foreign:
            name = self.directory.department_name(department_id)
            items.append(
                _SeedItem(
                    title=f"[Collaboration] Produce {name} deliverable",
                    description=(
                        f"Create and share the {name}-owned deliverable based on the planned meeting."
                    ),
                    target_department_id=department_id,
                )
            )
        items.append(
            _SeedItem(
                title=PLAN_CONSOLIDATION_TITLE,
                description=(
                    "Collect related-department outputs, merge into one package, and prepare "
                    "the review submission."
                ),
            )
        )
        for item in items:
            self._insert(task, item)
        self.repository.append_task_log(
            task.id,
            "system",
            f"Planned meeting seeded {len(items)} subtasks "
            f"(plan-notes: {len(items) - 2 - len(foreign)}, cross-dept: {len(foreign)})",
        )
        return len(items)

    def apply_marker(self, task_id: str, marker: SubtaskMarker) -> Subtask | None:
        existing = self.repository.find_subtask_by_marker(marker.marker_id)
        if marker.kind == "declared":
            if existing is not None:
                return existing
            task = self.repository.get_task(task_id)
            if task is None:
                return None
            subtask = self.repository.create_subtask(
                Subtask(
                    id=new_id(),
                    task_id=task_id,
                    title=marker.title or "Sub-task",
                    status="in_progress",
                    assigned_agent_id=task.assigned_agent_id,
                    marker_id=marker.marker_id,
                )
            )
            self.notifier.broadcast("subtask_update", to_row(subtask))
            return subtask
        if existing is None or existing.status == "done":
            return existing
        updated = self.repository.update_subtask(
            existing.id, status="done", completed_at=utcnow_iso()
        )
        self.notifier.broadcast("subtask_update", to_row(updated))
        return updated

    def complete_own_subtasks(self, task_id: str) -> int:
        """Mark undelegated own-department subtasks done after a successful run."""
        completed = 0
        for subtask in self.repository.list_subtasks(task_id):
            if subtask.status == "done" or subtask.target_department_id:
                continue
            if subtask.status == "blocked":
                continue
            updated = self.repository.update_subtask(
                subtask.id, status="done", completed_at=utcnow_iso()
            )
            self.notifier.broadcast("subtask_update", to_row(updated))
            completed += 1
        if completed:
            logger.info("auto-completed %s own subtasks (task=%s)", completed, task_id)
        return completed
