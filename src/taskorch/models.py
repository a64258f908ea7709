from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal, TypeVar
from uuid import uuid4

TaskStatus = Literal[
    "inbox",
    "planned",
    "collaborating",
    "in_progress",
    "review",
    "done",
    "cancelled",
    "pending",
]
SubtaskStatus = Literal["pending", "in_progress", "done", "blocked"]
MeetingType = Literal["planned", "review"]
MeetingStatus = Literal["in_progress", "completed", "revision_requested", "failed"]
StopMode = Literal["pause", "cancel"]

TERMINAL_STATUSES = frozenset({"done", "cancelled"})
TEAM_LEADER_ROLE = "team_leader"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def new_id() -> str:
    return uuid4().hex


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    status: TaskStatus = "inbox"
    department_id: str | None = None
    assigned_agent_id: str | None = None
    source_task_id: str | None = None
    project_path: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_child(self) -> bool:
        return bool(self.source_task_id)


@dataclass(slots=True)
class Subtask:
    id: str
    task_id: str
    title: str
    description: str = ""
    status: SubtaskStatus = "pending"
    assigned_agent_id: str | None = None
    target_department_id: str | None = None
    delegated_task_id: str | None = None
    blocked_reason: str | None = None
    marker_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def is_foreign(self) -> bool:
        return bool(self.target_department_id)


@dataclass(slots=True)
class Department:
    id: str
    name: str
    keywords: list[str] = field(default_factory=list)
    sort_order: int = 100


@dataclass(slots=True)
class Agent:
    id: str
    name: str
    department_id: str | None = None
    role: str = "member"
    provider: str = "claude"
    model: str | None = None
    status: str = "idle"
    current_task_id: str | None = None

    @property
    def is_leader(self) -> bool:
        return self.role == TEAM_LEADER_ROLE


@dataclass(slots=True)
class Meeting:
    id: str
    task_id: str
    meeting_type: MeetingType
    round: int
    status: MeetingStatus = "in_progress"
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None


@dataclass(slots=True)
class MeetingEntry:
    meeting_id: str
    seq: int
    speaker_agent_id: str | None
    speaker_name: str
    department_name: str
    role_label: str
    content: str
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class RevisionMemoItem:
    task_id: str
    normalized_note: str
    raw_note: str
    first_round: int
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class TaskLog:
    task_id: str
    kind: str
    message: str
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class StopRequest:
    task_id: str
    mode: StopMode
    requested_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class ExecutionSession:
    session_id: str
    task_id: str
    agent_id: str
    provider: str
    opened_at: str = field(default_factory=utcnow_iso)
    last_touched_at: str = field(default_factory=utcnow_iso)

    def prompt_line(self) -> str:
        return (
            f"[Task Session] id={self.session_id} owner={self.agent_id} "
            f"provider={self.provider}"
        )


RecordT = TypeVar("RecordT")


def to_row(record: Any) -> dict[str, Any]:
    return asdict(record)


def from_row(record_type: type[RecordT], row: dict[str, Any]) -> RecordT:
    known = {item.name for item in fields(record_type)}  # type: ignore[arg-type]
    return record_type(**{key: value for key, value in row.items() if key in known})
