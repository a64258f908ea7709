import random

from conftest import RecordingNotifier, seed_roster

from taskorch.config import DelegationConfig
from taskorch.delegation import DELEGATION_FAILED_REASON, DelegationQueue
from taskorch.directory import AgentDirectory
from taskorch.models import Department, Subtask, Task
from taskorch.state_machine import TaskStateMachine
from taskorch.store import InMemoryTaskRepository
from taskorch.workflow_store import WorkflowStore, WorkflowToken


def _queue(repository: InMemoryTaskRepository | None = None) -> DelegationQueue:
    if repository is None:
        repository = InMemoryTaskRepository()
        seed_roster(repository)
        repository.create_task(
            Task(
                id="p1",
                title="Login page",
                status="in_progress",
                department_id="dev",
                assigned_agent_id="dev-lead",
            )
        )
    store = WorkflowStore()
    notifier = RecordingNotifier()
    return DelegationQueue(
        repository,
        store,
        TaskStateMachine(repository, store, notifier),
        AgentDirectory(repository),
        notifier,
        DelegationConfig(),
        rng=random.Random(3),
    )


def _foreign(queue: DelegationQueue, subtask_id: str, department_id: str, second: int) -> None:
    queue.repository.create_subtask(
        Subtask(
            id=subtask_id,
            task_id="p1",
            title=f"Produce {department_id} deliverable",
            status="blocked",
            target_department_id=department_id,
            created_at=f"2026-01-01T00:00:{second:02d}+00:00",
        )
    )


def _subtask(queue: DelegationQueue, subtask_id: str) -> Subtask:
    subtask = queue.repository.get_subtask(subtask_id)
    assert subtask is not None
    return subtask


def _notices(queue: DelegationQueue) -> list[str]:
    notifier = queue.notifier
    assert isinstance(notifier, RecordingNotifier)
    return notifier.texts()


def test_pending_subtasks_follow_department_order() -> None:
    queue = _queue()
    _foreign(queue, "s-qa", "qa", 1)
    _foreign(queue, "s-design", "design", 2)
    queue.repository.create_subtask(Subtask(id="s-own", task_id="p1", title="Own work"))

    assert [subtask.id for subtask in queue.pending_subtasks("p1")] == ["s-design", "s-qa"]


def test_children_are_dispatched_one_at_a_time() -> None:
    queue = _queue()
    _foreign(queue, "s-qa", "qa", 1)
    _foreign(queue, "s-design", "design", 2)

    first = queue.process_delegations("p1")

    assert first.child is not None
    assert first.child.title == "[Collaboration] Produce design deliverable"
    assert first.child.status == "planned"
    assert first.child.assigned_agent_id == "design-lead"
    assert first.child.source_task_id == "p1"
    assert _subtask(queue, "s-design").delegated_task_id == first.child.id
    assert _subtask(queue, "s-design").status == "in_progress"
    assert queue.store.is_delegating("p1")
    assert "Delegating 2 external-department subtasks for 'Login page' sequentially by department." in (
        _notices(queue)
    )
    assert queue.process_delegations("p1").child is None

    token = queue.on_child_settled(first.child.id, succeeded=True)
    assert token == WorkflowToken("p1", "delegation")
    assert _subtask(queue, "s-design").status == "done"

    second = queue.advance(token)
    assert second.child is not None and second.child.department_id == "qa"
    assert [child.id for child in queue.open_children("p1")] == [first.child.id, second.child.id]

    queue.repository.update_task(first.child.id, status="review")
    token = queue.on_child_settled(second.child.id, succeeded=True)
    assert token is not None
    drained = queue.advance(token)

    assert (drained.drained, drained.all_complete) == (True, True)
    assert not queue.store.is_delegating("p1")
    assert any(notice.startswith("All subtasks for 'Login page'") for notice in _notices(queue))


def test_failed_child_blocks_subtask_and_token_is_rebuilt() -> None:
    queue = _queue()
    _foreign(queue, "s-qa", "qa", 1)
    step = queue.process_delegations("p1")
    assert step.child is not None

    # a fresh coordinator has no in-memory tokens
    restarted = _queue(queue.repository)
    token = restarted.on_child_settled(step.child.id, succeeded=False)

    assert token == WorkflowToken("p1", "delegation")
    subtask = _subtask(restarted, "s-qa")
    assert subtask.status == "blocked"
    assert subtask.blocked_reason == DELEGATION_FAILED_REASON
    assert restarted.on_child_settled("unknown", succeeded=True) is None


def test_department_without_leader_completes_inline() -> None:
    queue = _queue()
    queue.repository.upsert_department(Department(id="ops", name="Ops", keywords=["deploy"]))
    _foreign(queue, "s-ops", "ops", 1)

    step = queue.process_delegations("p1")

    assert step.child is None and step.drained
    assert _subtask(queue, "s-ops").status == "done"
    messages = [log.message for log in queue.repository.list_task_logs("p1")]
    assert "No leader in Ops; subtask completed without delegation: Produce ops deliverable" in messages


def test_reconcile_syncs_subtasks_with_children() -> None:
    queue = _queue()
    for index, department_id in enumerate(["design", "qa", "planning"], start=1):
        _foreign(queue, f"s-{department_id}", department_id, index)
    queue.repository.create_task(
        Task(id="c-design", title="c", status="done", department_id="design", source_task_id="p1")
    )
    queue.repository.create_task(
        Task(id="c-qa", title="c", status="inbox", department_id="qa", source_task_id="p1")
    )
    queue.repository.create_task(
        Task(id="c-plan", title="c", status="in_progress", department_id="planning", source_task_id="p1")
    )

    assert queue.reconcile("p1") == 3
    assert queue.reconcile() == 0

    assert _subtask(queue, "s-design").status == "done"
    assert _subtask(queue, "s-design").delegated_task_id == "c-design"
    assert _subtask(queue, "s-qa").status == "blocked"
    assert _subtask(queue, "s-qa").blocked_reason == DELEGATION_FAILED_REASON
    assert _subtask(queue, "s-planning").status == "in_progress"
    assert queue.store.delegation_token("c-plan") == WorkflowToken("p1", "delegation")


def test_retry_failed_cancels_stuck_child_and_unlinks() -> None:
    queue = _queue()
    _foreign(queue, "s-qa", "qa", 1)
    _foreign(queue, "s-design", "design", 2)
    queue.repository.create_task(
        Task(id="c-qa", title="c", status="inbox", department_id="qa", source_task_id="p1")
    )
    queue.repository.create_task(
        Task(id="c-design", title="c", status="review", department_id="design", source_task_id="p1")
    )
    queue.repository.update_subtask(
        "s-qa", delegated_task_id="c-qa", blocked_reason=DELEGATION_FAILED_REASON
    )
    queue.repository.update_subtask(
        "s-design", delegated_task_id="c-design", blocked_reason=DELEGATION_FAILED_REASON
    )

    assert queue.retry_failed("p1") == 1

    qa_child = queue.repository.get_task("c-qa")
    assert qa_child is not None and qa_child.status == "cancelled"
    retried = _subtask(queue, "s-qa")
    assert retried.delegated_task_id is None
    assert retried.blocked_reason == "Waiting for QA collaboration"
    assert _subtask(queue, "s-design").delegated_task_id == "c-design"
    assert [subtask.id for subtask in queue.pending_subtasks("p1")] == ["s-qa"]


def test_next_delay_depends_on_outcome() -> None:
    queue = _queue()

    assert queue.next_delay(succeeded=False) == 3.0
    assert 0.8 <= queue.next_delay(succeeded=True) <= 1.4
