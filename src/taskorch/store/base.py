from __future__ import annotations

from typing import Any, Protocol

from taskorch.models import (
    Agent,
    Department,
    Meeting,
    MeetingEntry,
    StopRequest,
    Subtask,
    Task,
    TaskLog,
)


class TaskRepository(Protocol):
    """Row-level persistence used by the coordinator and its components.

    Implementations raise ``TransientStorageError`` when the backing store is
    momentarily contended; they never retry on their own.
    """

    # tasks
    def create_task(self, task: Task, *, idempotency_key: str | None = None) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self,
        *,
        status: str | None = None,
        source_task_id: str | None = None,
    ) -> list[Task]: ...

    def update_task(self, task_id: str, **changes: Any) -> Task: ...

    def delete_task(self, task_id: str) -> None: ...

    # subtasks
    def create_subtask(self, subtask: Subtask) -> Subtask: ...

    def get_subtask(self, subtask_id: str) -> Subtask | None: ...

    def list_subtasks(self, task_id: str) -> list[Subtask]: ...

    def find_subtask_by_marker(self, marker_id: str) -> Subtask | None: ...

    def update_subtask(self, subtask_id: str, **changes: Any) -> Subtask: ...

    # organization
    def upsert_department(self, department: Department) -> Department: ...

    def list_departments(self) -> list[Department]: ...

    def upsert_agent(self, agent: Agent) -> Agent: ...

    def get_agent(self, agent_id: str) -> Agent | None: ...

    def list_agents(self, *, department_id: str | None = None) -> list[Agent]: ...

    def update_agent(self, agent_id: str, **changes: Any) -> Agent: ...

    # meetings
    def create_meeting(self, meeting: Meeting) -> Meeting: ...

    def latest_meeting(self, task_id: str, meeting_type: str) -> Meeting | None: ...

    def list_meetings(self, task_id: str, meeting_type: str | None = None) -> list[Meeting]: ...

    def update_meeting(self, meeting_id: str, **changes: Any) -> Meeting: ...

    def append_meeting_entry(
        self,
        meeting_id: str,
        *,
        speaker_agent_id: str | None,
        speaker_name: str,
        department_name: str,
        role_label: str,
        content: str,
    ) -> MeetingEntry: ...

    def list_meeting_entries(self, meeting_id: str) -> list[MeetingEntry]: ...

    # revision memo items
    def reserve_memo_items(
        self, task_id: str, round_no: int, notes: list[tuple[str, str]]
    ) -> tuple[list[str], int]: ...

    def recent_memo_items(self, task_id: str, limit: int) -> list[str]: ...

    # logs and stop requests
    def append_task_log(self, task_id: str, kind: str, message: str) -> TaskLog: ...

    def list_task_logs(self, task_id: str) -> list[TaskLog]: ...

    def enqueue_stop_request(self, request: StopRequest) -> None: ...

    def drain_stop_requests(self) -> list[StopRequest]: ...

    def discard_stop_requests(self, task_id: str) -> int: ...
