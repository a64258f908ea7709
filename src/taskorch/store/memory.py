from __future__ import annotations

import copy
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from taskorch.errors import IdempotencyConflict, RecordNotFoundError, TaskNotFoundError
from taskorch.models import (
    Agent,
    Department,
    Meeting,
    MeetingEntry,
    RevisionMemoItem,
    StopRequest,
    Subtask,
    Task,
    TaskLog,
    from_row,
    to_row,
    utcnow_iso,
)

Tables = dict[str, Any]

TASK_LOG_LIMIT = 500


def empty_tables() -> Tables:
    return {
        "tasks": {},
        "subtasks": {},
        "departments": {},
        "agents": {},
        "meetings": {},
        "meeting_entries": {},
        "memo_items": {},
        "task_logs": {},
        "stop_requests": [],
        "idempotency": {},
    }


class InMemoryTaskRepository:
    """Dict-of-rows repository; rows are plain JSON-compatible dicts.

    Subclasses only override ``_transaction`` and ``_snapshot`` to change
    where the tables live.
    """

    def __init__(self) -> None:
        self._tables: Tables = empty_tables()

    @contextmanager
    def _transaction(self) -> Iterator[Tables]:
        yield self._tables

    @contextmanager
    def _snapshot(self) -> Iterator[Tables]:
        yield self._tables

    # tasks

    @staticmethod
    def _fingerprint(task: Task) -> str:
        return f"{task.title}\x1f{task.description}\x1f{task.department_id or ''}"

    def create_task(self, task: Task, *, idempotency_key: str | None = None) -> Task:
        with self._transaction() as tables:
            if idempotency_key:
                known = tables["idempotency"].get(idempotency_key)
                if known is not None:
                    if known["fingerprint"] != self._fingerprint(task):
                        raise IdempotencyConflict(
                            f"Idempotency key '{idempotency_key}' was already used "
                            "for a different task payload.",
                            key=idempotency_key,
                        )
                    existing = tables["tasks"].get(known["task_id"])
                    if existing is not None:
                        return from_row(Task, existing)
            if task.id in tables["tasks"]:
                raise IdempotencyConflict(f"Task id '{task.id}' already exists.", key=task.id)
            tables["tasks"][task.id] = to_row(task)
            if idempotency_key:
                tables["idempotency"][idempotency_key] = {
                    "task_id": task.id,
                    "fingerprint": self._fingerprint(task),
                }
        return copy.copy(task)

    def get_task(self, task_id: str) -> Task | None:
        with self._snapshot() as tables:
            row = tables["tasks"].get(task_id)
            return from_row(Task, row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: str | None = None,
        source_task_id: str | None = None,
    ) -> list[Task]:
        with self._snapshot() as tables:
            rows = list(tables["tasks"].values())
        tasks = [from_row(Task, row) for row in rows]
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        if source_task_id is not None:
            tasks = [task for task in tasks if task.source_task_id == source_task_id]
        return tasks

    def update_task(self, task_id: str, **changes: Any) -> Task:
        with self._transaction() as tables:
            row = tables["tasks"].get(task_id)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            row.update(changes)
            row["updated_at"] = utcnow_iso()
            return from_row(Task, row)

    def delete_task(self, task_id: str) -> None:
        with self._transaction() as tables:
            tables["tasks"].pop(task_id, None)
            for subtask_id in [
                sid for sid, row in tables["subtasks"].items() if row["task_id"] == task_id
            ]:
                del tables["subtasks"][subtask_id]

    # subtasks

    def create_subtask(self, subtask: Subtask) -> Subtask:
        with self._transaction() as tables:
            tables["subtasks"][subtask.id] = to_row(subtask)
        return copy.copy(subtask)

    def get_subtask(self, subtask_id: str) -> Subtask | None:
        with self._snapshot() as tables:
            row = tables["subtasks"].get(subtask_id)
            return from_row(Subtask, row) if row is not None else None

    def list_subtasks(self, task_id: str) -> list[Subtask]:
        with self._snapshot() as tables:
            rows = [row for row in tables["subtasks"].values() if row["task_id"] == task_id]
        return [from_row(Subtask, row) for row in rows]

    def find_subtask_by_marker(self, marker_id: str) -> Subtask | None:
        with self._snapshot() as tables:
            for row in tables["subtasks"].values():
                if row.get("marker_id") == marker_id:
                    return from_row(Subtask, row)
        return None

    def update_subtask(self, subtask_id: str, **changes: Any) -> Subtask:
        with self._transaction() as tables:
            row = tables["subtasks"].get(subtask_id)
            if row is None:
                raise RecordNotFoundError(f"Subtask not found: {subtask_id}")
            row.update(changes)
            return from_row(Subtask, row)

    # organization

    def upsert_department(self, department: Department) -> Department:
        with self._transaction() as tables:
            tables["departments"][department.id] = to_row(department)
        return department

    def list_departments(self) -> list[Department]:
        with self._snapshot() as tables:
            rows = list(tables["departments"].values())
        return [from_row(Department, row) for row in rows]

    def upsert_agent(self, agent: Agent) -> Agent:
        with self._transaction() as tables:
            current = tables["agents"].get(agent.id)
            row = to_row(agent)
            if current is not None:
                row["status"] = current.get("status", agent.status)
                row["current_task_id"] = current.get("current_task_id")
            tables["agents"][agent.id] = row
            return from_row(Agent, row)

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._snapshot() as tables:
            row = tables["agents"].get(agent_id)
            return from_row(Agent, row) if row is not None else None

    def list_agents(self, *, department_id: str | None = None) -> list[Agent]:
        with self._snapshot() as tables:
            rows = list(tables["agents"].values())
        agents = [from_row(Agent, row) for row in rows]
        if department_id is not None:
            agents = [agent for agent in agents if agent.department_id == department_id]
        return agents

    def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        with self._transaction() as tables:
            row = tables["agents"].get(agent_id)
            if row is None:
                raise RecordNotFoundError(f"Agent not found: {agent_id}")
            row.update(changes)
            return from_row(Agent, row)

    # meetings

    def create_meeting(self, meeting: Meeting) -> Meeting:
        with self._transaction() as tables:
            tables["meetings"][meeting.id] = to_row(meeting)
            tables["meeting_entries"].setdefault(meeting.id, [])
        return copy.copy(meeting)

    def latest_meeting(self, task_id: str, meeting_type: str) -> Meeting | None:
        meetings = self.list_meetings(task_id, meeting_type)
        if not meetings:
            return None
        return max(meetings, key=lambda meeting: (meeting.round, meeting.started_at))

    def list_meetings(self, task_id: str, meeting_type: str | None = None) -> list[Meeting]:
        with self._snapshot() as tables:
            rows = [row for row in tables["meetings"].values() if row["task_id"] == task_id]
        meetings = [from_row(Meeting, row) for row in rows]
        if meeting_type is not None:
            meetings = [meeting for meeting in meetings if meeting.meeting_type == meeting_type]
        return meetings

    def update_meeting(self, meeting_id: str, **changes: Any) -> Meeting:
        with self._transaction() as tables:
            row = tables["meetings"].get(meeting_id)
            if row is None:
                raise RecordNotFoundError(f"Meeting not found: {meeting_id}")
            row.update(changes)
            return from_row(Meeting, row)

    def append_meeting_entry(
        self,
        meeting_id: str,
        *,
        speaker_agent_id: str | None,
        speaker_name: str,
        department_name: str,
        role_label: str,
        content: str,
    ) -> MeetingEntry:
        with self._transaction() as tables:
            if meeting_id not in tables["meetings"]:
                raise RecordNotFoundError(f"Meeting not found: {meeting_id}")
            entries = tables["meeting_entries"].setdefault(meeting_id, [])
            seq = max((row["seq"] for row in entries), default=0) + 1
            entry = MeetingEntry(
                meeting_id=meeting_id,
                seq=seq,
                speaker_agent_id=speaker_agent_id,
                speaker_name=speaker_name,
                department_name=department_name,
                role_label=role_label,
                content=content,
            )
            entries.append(to_row(entry))
        return entry

    def list_meeting_entries(self, meeting_id: str) -> list[MeetingEntry]:
        with self._snapshot() as tables:
            rows = list(tables["meeting_entries"].get(meeting_id, []))
        return [from_row(MeetingEntry, row) for row in sorted(rows, key=lambda row: row["seq"])]

    # revision memo items

    def reserve_memo_items(
        self, task_id: str, round_no: int, notes: list[tuple[str, str]]
    ) -> tuple[list[str], int]:
        fresh: list[str] = []
        duplicates = 0
        with self._transaction() as tables:
            items = tables["memo_items"].setdefault(task_id, {})
            for normalized, raw in notes:
                if not normalized:
                    continue
                if normalized in items:
                    duplicates += 1
                    continue
                items[normalized] = to_row(
                    RevisionMemoItem(
                        task_id=task_id,
                        normalized_note=normalized,
                        raw_note=raw,
                        first_round=round_no,
                    )
                )
                fresh.append(raw)
        return fresh, duplicates

    def recent_memo_items(self, task_id: str, limit: int) -> list[str]:
        with self._snapshot() as tables:
            rows = list(tables["memo_items"].get(task_id, {}).values())
        rows.sort(key=lambda row: (row["first_round"], row["created_at"]), reverse=True)
        return [row["raw_note"] for row in rows[: max(0, limit)]]

    # logs and stop requests

    def append_task_log(self, task_id: str, kind: str, message: str) -> TaskLog:
        log = TaskLog(task_id=task_id, kind=kind, message=message)
        with self._transaction() as tables:
            logs = tables["task_logs"].setdefault(task_id, [])
            logs.append(to_row(log))
            if len(logs) > TASK_LOG_LIMIT:
                del logs[: len(logs) - TASK_LOG_LIMIT]
        return log

    def list_task_logs(self, task_id: str) -> list[TaskLog]:
        with self._snapshot() as tables:
            rows = list(tables["task_logs"].get(task_id, []))
        return [from_row(TaskLog, row) for row in rows]

    def enqueue_stop_request(self, request: StopRequest) -> None:
        with self._transaction() as tables:
            tables["stop_requests"].append(to_row(request))

    def drain_stop_requests(self) -> list[StopRequest]:
        with self._transaction() as tables:
            rows = list(tables["stop_requests"])
            tables["stop_requests"].clear()
        return [from_row(StopRequest, row) for row in rows]

    def discard_stop_requests(self, task_id: str) -> int:
        with self._transaction() as tables:
            queued = tables["stop_requests"]
            kept = [row for row in queued if row["task_id"] != task_id]
            dropped = len(queued) - len(kept)
            queued[:] = kept
        return dropped
