import pytest
from conftest import RecordingNotifier

from taskorch.errors import InvalidTransitionError, TaskNotFoundError, WorkflowInterrupted
from taskorch.models import Agent, Task
from taskorch.state_machine import TaskStateMachine
from taskorch.store import InMemoryTaskRepository
from taskorch.workflow_store import WorkflowStore


def _machine() -> tuple[TaskStateMachine, InMemoryTaskRepository, RecordingNotifier]:
    repository = InMemoryTaskRepository()
    notifier = RecordingNotifier()
    return TaskStateMachine(repository, WorkflowStore(), notifier), repository, notifier


def test_transition_writes_status_log_and_event() -> None:
    machine, repository, notifier = _machine()
    repository.create_task(Task(id="t1", title="Login"))

    running = machine.transition("t1", "in_progress", reason="run started")
    reviewing = machine.transition("t1", "review")
    done = machine.transition("t1", "done")

    assert running.started_at is not None
    assert reviewing.status == "review"
    assert done.completed_at is not None
    assert [log.message for log in repository.list_task_logs("t1")] == [
        "Status inbox -> in_progress (run started)",
        "Status in_progress -> review",
        "Status review -> done",
    ]
    assert [event for event, _ in notifier.events] == ["task_update"] * 3
    assert notifier.events[-1][1]["status"] == "done"


def test_terminal_and_unknown_transitions_are_rejected() -> None:
    machine, repository, _ = _machine()
    repository.create_task(Task(id="t1", title="Login", status="done"))
    repository.create_task(Task(id="t2", title="Fresh"))

    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.transition("t1", "in_progress")
    assert (excinfo.value.from_status, excinfo.value.to_status) == ("done", "in_progress")
    with pytest.raises(InvalidTransitionError):
        machine.transition("t2", "done")
    with pytest.raises(TaskNotFoundError):
        machine.transition("missing", "planned")

    assert machine.can_transition("pending", "review")
    assert not machine.can_transition("cancelled", "inbox")


def test_same_status_transition_only_updates_fields() -> None:
    machine, repository, notifier = _machine()
    repository.create_task(Task(id="t1", title="Login"))

    task = machine.transition("t1", "inbox", assigned_agent_id="dev-lead")

    assert task.assigned_agent_id == "dev-lead"
    assert repository.list_task_logs("t1") == []
    assert notifier.events == []


def test_terminal_transition_ends_execution_session() -> None:
    machine, repository, _ = _machine()
    repository.create_task(Task(id="t1", title="Login", status="review"))
    machine.store.ensure_session("t1", "dev-lead", "claude")

    machine.transition("t1", "cancelled")

    assert machine.store.get_session("t1") is None


def test_ensure_active_reports_interruptions() -> None:
    machine, repository, _ = _machine()
    repository.create_task(Task(id="t1", title="Login", status="review"))
    allowed = frozenset({"review"})

    assert machine.ensure_active("t1", allowed).id == "t1"

    with pytest.raises(WorkflowInterrupted, match="deleted"):
        machine.ensure_active("missing", allowed)
    with pytest.raises(WorkflowInterrupted) as excinfo:
        machine.ensure_active("t1", frozenset({"in_progress"}))
    assert excinfo.value.reason == "review"

    machine.store.request_stop("t1", "pause")
    with pytest.raises(WorkflowInterrupted, match=r"stop requested \(pause\)"):
        machine.ensure_active("t1", allowed)


def test_children_blocking_review_ignores_settled_children() -> None:
    machine, repository, _ = _machine()
    repository.create_task(Task(id="p1", title="Parent", status="review"))
    repository.create_task(Task(id="c1", title="Done", status="done", source_task_id="p1"))
    repository.create_task(Task(id="c2", title="Running", status="in_progress", source_task_id="p1"))
    repository.create_task(Task(id="c3", title="Reviewing", status="review", source_task_id="p1"))

    assert [child.id for child in machine.children("p1")] == ["c1", "c2", "c3"]
    assert [child.id for child in machine.children_blocking_review("p1")] == ["c2"]


def test_release_agent_respects_current_task() -> None:
    machine, repository, notifier = _machine()
    repository.upsert_agent(Agent(id="a1", name="Aria", department_id="dev"))
    machine.occupy_agent("a1", "t2")

    machine.release_agent("a1", "t1")
    still_busy = repository.get_agent("a1")
    machine.release_agent("a1", "t2")
    released = repository.get_agent("a1")
    machine.release_agent(None)
    machine.release_agent("ghost")

    assert still_busy is not None and still_busy.status == "working"
    assert released is not None and released.status == "idle"
    assert released.current_task_id is None
    assert [payload["status"] for _, payload in notifier.events] == ["working", "idle"]
