import json
from pathlib import Path

import pytest

from taskorch.config import StorageConfig
from taskorch.errors import IdempotencyConflict, RecordNotFoundError, TaskNotFoundError, TransientStorageError
from taskorch.models import Agent, Meeting, StopRequest, Subtask, Task
from taskorch.store import (
    BusyRetryPolicy,
    InMemoryTaskRepository,
    JsonFileTaskRepository,
    TaskRepository,
    call_with_busy_retry,
    open_repository,
)


@pytest.fixture(params=["memory", "json"])
def repository(request: pytest.FixtureRequest, tmp_path: Path) -> TaskRepository:
    if request.param == "memory":
        return InMemoryTaskRepository()
    return JsonFileTaskRepository(tmp_path / "state.json", lock_timeout_seconds=0.2)


def test_task_crud_and_filters(repository: TaskRepository) -> None:
    parent = repository.create_task(Task(id="p1", title="Parent"))
    repository.create_task(Task(id="c1", title="Child", source_task_id="p1"))

    updated = repository.update_task("c1", status="review")

    assert parent.status == "inbox"
    assert updated.status == "review"
    assert [task.id for task in repository.list_tasks(status="review")] == ["c1"]
    assert [task.id for task in repository.list_tasks(source_task_id="p1")] == ["c1"]
    assert repository.get_task("missing") is None
    with pytest.raises(TaskNotFoundError):
        repository.update_task("missing", status="done")

    repository.create_subtask(Subtask(id="s1", task_id="p1", title="Sub"))
    repository.delete_task("p1")
    assert repository.get_task("p1") is None
    assert repository.list_subtasks("p1") == []


def test_idempotency_key_returns_existing_task(repository: TaskRepository) -> None:
    first = repository.create_task(Task(id="t1", title="Login"), idempotency_key="k1")
    again = repository.create_task(Task(id="t2", title="Login"), idempotency_key="k1")

    assert again.id == first.id
    assert len(repository.list_tasks()) == 1
    with pytest.raises(IdempotencyConflict) as excinfo:
        repository.create_task(Task(id="t3", title="Logout"), idempotency_key="k1")
    assert excinfo.value.key == "k1"
    with pytest.raises(IdempotencyConflict):
        repository.create_task(Task(id="t1", title="Duplicate id"))


def test_subtasks_and_markers(repository: TaskRepository) -> None:
    repository.create_subtask(Subtask(id="s1", task_id="t1", title="A", marker_id="toolu_1"))
    repository.create_subtask(Subtask(id="s2", task_id="t1", title="B"))

    repository.update_subtask("s2", status="blocked", blocked_reason="waiting")

    found = repository.find_subtask_by_marker("toolu_1")
    assert found is not None and found.id == "s1"
    assert repository.find_subtask_by_marker("nope") is None
    blocked = repository.get_subtask("s2")
    assert blocked is not None and blocked.blocked_reason == "waiting"
    with pytest.raises(RecordNotFoundError):
        repository.update_subtask("missing", status="done")


def test_agent_upsert_keeps_runtime_status(repository: TaskRepository) -> None:
    repository.upsert_agent(Agent(id="a1", name="Aria", department_id="dev"))
    repository.update_agent("a1", status="working", current_task_id="t1")

    refreshed = repository.upsert_agent(
        Agent(id="a1", name="Aria Prime", department_id="dev", role="team_leader")
    )

    assert refreshed.name == "Aria Prime"
    assert refreshed.status == "working"
    assert refreshed.current_task_id == "t1"
    assert [agent.id for agent in repository.list_agents(department_id="dev")] == ["a1"]
    assert repository.list_agents(department_id="qa") == []


def test_meetings_entries_are_sequenced(repository: TaskRepository) -> None:
    repository.create_meeting(Meeting(id="m1", task_id="t1", meeting_type="review", round=1))
    repository.create_meeting(Meeting(id="m2", task_id="t1", meeting_type="review", round=2))
    repository.create_meeting(Meeting(id="m3", task_id="t1", meeting_type="planned", round=1))

    for content in ["opening", "feedback"]:
        repository.append_meeting_entry(
            "m2",
            speaker_agent_id="a1",
            speaker_name="Sage",
            department_name="Planning",
            role_label="Team Leader",
            content=content,
        )
    repository.update_meeting("m1", status="revision_requested")

    latest = repository.latest_meeting("t1", "review")
    assert latest is not None and latest.id == "m2"
    assert [entry.seq for entry in repository.list_meeting_entries("m2")] == [1, 2]
    assert len(repository.list_meetings("t1")) == 3
    assert repository.list_meetings("t1", "review")[0].status == "revision_requested"
    with pytest.raises(RecordNotFoundError):
        repository.append_meeting_entry(
            "missing",
            speaker_agent_id=None,
            speaker_name="x",
            department_name="x",
            role_label="x",
            content="x",
        )


def test_memo_items_are_deduplicated_per_task(repository: TaskRepository) -> None:
    fresh, duplicates = repository.reserve_memo_items(
        "t1", 1, [("add retry docs", "Add retry docs."), ("", "ignored")]
    )
    again, repeated = repository.reserve_memo_items(
        "t1", 2, [("add retry docs", "Add retry docs!"), ("tighten logs", "Tighten logs.")]
    )
    other, _ = repository.reserve_memo_items("t2", 1, [("add retry docs", "Add retry docs.")])

    assert (fresh, duplicates) == (["Add retry docs."], 0)
    assert (again, repeated) == (["Tighten logs."], 1)
    assert other == ["Add retry docs."]
    assert repository.recent_memo_items("t1", 1) == ["Tighten logs."]
    assert repository.recent_memo_items("t1", 0) == []


def test_stop_requests_drain_and_discard(repository: TaskRepository) -> None:
    repository.enqueue_stop_request(StopRequest(task_id="t1", mode="pause"))
    repository.enqueue_stop_request(StopRequest(task_id="t2", mode="cancel"))
    repository.enqueue_stop_request(StopRequest(task_id="t1", mode="cancel"))

    assert repository.discard_stop_requests("t1") == 2
    drained = repository.drain_stop_requests()

    assert [(request.task_id, request.mode) for request in drained] == [("t2", "cancel")]
    assert repository.drain_stop_requests() == []


def test_task_logs_are_ordered(repository: TaskRepository) -> None:
    repository.append_task_log("t1", "system", "first")
    repository.append_task_log("t1", "system", "second")

    assert [log.message for log in repository.list_task_logs("t1")] == ["first", "second"]
    assert repository.list_task_logs("t2") == []


def test_json_store_persists_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    writer = JsonFileTaskRepository(path)
    writer.create_task(Task(id="t1", title="Persisted"))
    writer.update_task("t1", status="planned")

    reader = JsonFileTaskRepository(path)
    task = reader.get_task("t1")

    assert task is not None and task.status == "planned"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    assert envelope["schema_version"] == 1
    assert envelope["revision"] == reader.revision == 2
    assert not writer.lock_file.exists()


def test_json_store_lock_timeout_is_transient(tmp_path: Path) -> None:
    repository = JsonFileTaskRepository(tmp_path / "state.json", lock_timeout_seconds=0.05)
    repository.lock_file.write_text("4242", encoding="utf-8")

    with pytest.raises(TransientStorageError, match="Timed out waiting for state lock"):
        repository.create_task(Task(id="t1", title="Blocked"))

    repository.lock_file.unlink()
    repository.create_task(Task(id="t1", title="Unblocked"))
    assert repository.get_task("t1") is not None


def test_busy_retry_retries_only_transient_errors() -> None:
    calls: list[int] = []
    delays: list[float] = []
    policy = BusyRetryPolicy(max_attempts=3, base_delay_seconds=0.01, max_delay_seconds=0.015, jitter_seconds=0)

    def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise TransientStorageError("busy")
        return "ok"

    assert call_with_busy_retry(flaky, policy, sleep=delays.append) == "ok"
    assert delays == [0.01, 0.015]

    def always_busy() -> None:
        raise TransientStorageError("busy")

    with pytest.raises(TransientStorageError):
        call_with_busy_retry(always_busy, policy, sleep=delays.append)

    def broken() -> None:
        raise ValueError("not storage")

    before = len(delays)
    with pytest.raises(ValueError):
        call_with_busy_retry(broken, policy, sleep=delays.append)
    assert len(delays) == before


def test_open_repository_resolves_backends(tmp_path: Path) -> None:
    memory = open_repository(StorageConfig(backend="memory"), tmp_path)
    json_repo = open_repository(StorageConfig(path="data/state.json"), tmp_path)

    assert isinstance(memory, InMemoryTaskRepository)
    assert not isinstance(memory, JsonFileTaskRepository)
    assert isinstance(json_repo, JsonFileTaskRepository)
    assert json_repo.path == (tmp_path / "data" / "state.json").resolve()
