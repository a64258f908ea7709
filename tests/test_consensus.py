import asyncio
import random

from conftest import RecordingNotifier, ScriptedSpeaker, no_sleep, quiet_config, seed_roster

from taskorch.config import ReviewConfig
from taskorch.directory import AgentDirectory
from taskorch.models import Agent, Meeting, Task
from taskorch.review import KeywordSignalClassifier, ReviewConsensus, ReviewOutcome
from taskorch.review.meeting import MeetingSession
from taskorch.review.speakers import TurnKind
from taskorch.state_machine import TaskStateMachine
from taskorch.store import InMemoryTaskRepository
from taskorch.subtasks import SubtaskPlanner
from taskorch.workflow_store import WorkflowStore

HOLD = "Hold: the error handling for uploads is missing, revise before merge."
DEFERRABLE_HOLD = "Hold: production monitoring checklist is missing."


class StoppingSpeaker(ScriptedSpeaker):
    def __init__(self) -> None:
        super().__init__()
        self.store: WorkflowStore | None = None

    async def speak(self, agent: Agent, prompt: str, kind: TurnKind) -> str:
        if kind == "feedback" and self.store is not None:
            self.store.request_stop("t1", "pause")
        return await super().speak(agent, prompt, kind)


class BrokenSpeaker(ScriptedSpeaker):
    async def speak(self, agent: Agent, prompt: str, kind: TurnKind) -> str:
        raise RuntimeError("speaker crashed")


def _consensus(
    speaker: ScriptedSpeaker | None = None,
    *,
    config: ReviewConfig | None = None,
    roster: bool = True,
) -> ReviewConsensus:
    repository = InMemoryTaskRepository()
    if roster:
        seed_roster(repository)
    store = WorkflowStore()
    notifier = RecordingNotifier()
    state = TaskStateMachine(repository, store, notifier)
    directory = AgentDirectory(repository)
    repository.create_task(
        Task(
            id="t1",
            title="Login page",
            status="review",
            department_id="dev",
            assigned_agent_id="dev-lead",
        )
    )
    return ReviewConsensus(
        repository,
        store,
        state,
        directory,
        speaker or ScriptedSpeaker(),
        KeywordSignalClassifier(),
        notifier,
        config or quiet_config().review,
        sleep=no_sleep,
        rng=random.Random(1),
        planner=SubtaskPlanner(repository, directory, notifier),
    )


def _prior_meeting(consensus: ReviewConsensus, round_no: int, status: str) -> None:
    consensus.repository.create_meeting(
        Meeting(
            id=f"m{round_no}",
            task_id="t1",
            meeting_type="review",
            round=round_no,
            status=status,  # type: ignore[arg-type]
        )
    )


def _logs(consensus: ReviewConsensus) -> list[str]:
    return [log.message for log in consensus.repository.list_task_logs("t1")]


def _description(consensus: ReviewConsensus) -> str:
    task = consensus.repository.get_task("t1")
    assert task is not None
    return task.description


def _notices(consensus: ReviewConsensus) -> list[str]:
    notifier = consensus.notifier
    assert isinstance(notifier, RecordingNotifier)
    return notifier.texts()


def test_round_one_all_approve() -> None:
    consensus = _consensus()

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "approved"
    assert (outcome.round, outcome.mode) == (1, "parallel_remediation")
    meeting = consensus.repository.latest_meeting("t1", "review")
    assert meeting is not None and meeting.status == "completed"
    assert len(consensus.repository.list_meeting_entries(meeting.id)) == 5
    assert "Review consensus round 1: all leaders approved" in _logs(consensus)
    assert "'Login page' is approved by all leaders. Proceeding to Done." in _notices(consensus)
    assert not consensus.store.is_review_locked("t1")
    assert consensus.store.present_agents() == []


def test_round_one_hold_seeds_remediation() -> None:
    consensus = _consensus(ScriptedSpeaker(finals={"dev-lead": [HOLD]}))

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "remediation"
    assert outcome.admitted_holds == ["dev-lead"]
    assert outcome.subtasks_created == 2
    assert outcome.memo_items == [f"Development Aria: {HOLD}"]
    meeting = consensus.repository.latest_meeting("t1", "review")
    assert meeting is not None and meeting.status == "revision_requested"
    assert consensus.remediation_requests_used("t1") == 1
    assert "[PROJECT MEMO] Review round 1 unresolved improvement items" in _description(consensus)
    titles = [subtask.title for subtask in consensus.repository.list_subtasks("t1")]
    assert titles[-1] == "[Review Revision] Consolidate updates and resubmit for review"


def test_round_one_hold_without_budget_moves_to_next_round() -> None:
    config = quiet_config().review
    config.max_remediation_requests = 0
    consensus = _consensus(ScriptedSpeaker(finals={"dev-lead": [HOLD]}), config=config)

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "next_round"
    assert consensus.repository.list_subtasks("t1") == []
    assert any("remediation request cap reached (0/task)" in line for line in _logs(consensus))
    meeting = consensus.repository.latest_meeting("t1", "review")
    assert meeting is not None and meeting.status == "completed"


def test_round_two_hold_documents_residual_risk() -> None:
    consensus = _consensus(ScriptedSpeaker(finals={"dev-lead": [HOLD]}))
    _prior_meeting(consensus, 1, "revision_requested")

    outcome = asyncio.run(consensus.run("t1"))

    assert (outcome.decision, outcome.round, outcome.mode) == ("next_round", 2, "merge_synthesis")
    assert consensus.repository.list_subtasks("t1") == []
    assert any("residual risk documented" in line for line in _logs(consensus))


def test_round_three_hold_closes_with_final_memo() -> None:
    consensus = _consensus(ScriptedSpeaker(finals={"dev-lead": [HOLD]}))
    _prior_meeting(consensus, 1, "revision_requested")
    _prior_meeting(consensus, 2, "completed")

    outcome = asyncio.run(consensus.run("t1"))

    assert (outcome.decision, outcome.mode) == ("approved", "final_decision")
    assert outcome.reason == "final decision with residual risk"
    description = _description(consensus)
    assert "[PROJECT MEMO] Review round 3 final package" in description
    assert "Finalized with conditional approval and documented residual risks." in description


def test_rounds_beyond_max_force_approval() -> None:
    consensus = _consensus()
    for round_no in (1, 2, 3):
        _prior_meeting(consensus, round_no, "completed")

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "approved"
    assert outcome.reason == "max rounds exceeded"
    assert outcome.round == 4
    assert "[PROJECT MEMO] Review round 4 final package" in _description(consensus)
    assert len(consensus.repository.list_meetings("t1")) == 3


def test_deferrable_hold_becomes_memo_note() -> None:
    consensus = _consensus(ScriptedSpeaker(finals={"dev-lead": [DEFERRABLE_HOLD]}))

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "approved"
    assert outcome.admitted_holds == []
    assert outcome.deferred_notes == [f"Development Aria: {DEFERRABLE_HOLD}"]
    assert "[PROJECT MEMO] Review round 1 unresolved improvement items" in _description(consensus)
    assert any("post-merge monitoring checklist" in notice for notice in _notices(consensus))


def test_in_progress_meeting_is_resumed() -> None:
    consensus = _consensus()
    _prior_meeting(consensus, 1, "revision_requested")
    _prior_meeting(consensus, 2, "in_progress")

    outcome = asyncio.run(consensus.run("t1"))

    assert (outcome.round, outcome.meeting_id) == (2, "m2")
    assert "'Login page' review round 2 resumed (merge_synthesis)." in _notices(consensus)


def test_stop_during_meeting_interrupts_round() -> None:
    speaker = StoppingSpeaker()
    consensus = _consensus(speaker)
    speaker.store = consensus.store

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "interrupted"
    assert outcome.reason == "stop requested (pause)"
    meeting = consensus.repository.latest_meeting("t1", "review")
    assert meeting is not None and meeting.status == "failed"
    assert (
        "Review meeting aborted due to task state change (stop requested (pause))"
        in _logs(consensus)
    )
    assert not consensus.store.is_review_locked("t1")


def test_review_in_flight_is_skipped() -> None:
    consensus = _consensus()
    consensus.store.try_acquire_review_lock("t1")

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome == ReviewOutcome("t1", "skipped", reason="review already in flight")


def test_speaker_failure_fails_round() -> None:
    consensus = _consensus(BrokenSpeaker())

    outcome = asyncio.run(consensus.run("t1"))

    assert outcome.decision == "failed"
    assert outcome.reason == "speaker crashed"
    assert any("Error while processing review round" in notice for notice in _notices(consensus))
    meeting = consensus.repository.latest_meeting("t1", "review")
    assert meeting is not None and meeting.status == "failed"


def test_no_leaders_approves_immediately() -> None:
    consensus = _consensus(roster=False)

    outcome = asyncio.run(consensus.run("t1"))

    assert (outcome.decision, outcome.reason) == ("approved", "no leaders")
    assert consensus.repository.list_meetings("t1") == []


def test_hold_admission_applies_round_and_department_caps() -> None:
    consensus = _consensus()
    leaders = [
        Agent(id="dev-a", name="Aria", department_id="dev", role="team_leader"),
        Agent(id="dev-b", name="Bolt", department_id="dev", role="team_leader"),
        Agent(id="dev-c", name="Cruz", department_id="dev", role="team_leader"),
        Agent(id="qa-lead", name="Hawk", department_id="qa", role="team_leader"),
        Agent(id="design-lead", name="Pixel", department_id="design", role="team_leader"),
    ]
    task = consensus.repository.get_task("t1")
    assert task is not None
    session = MeetingSession(task=task, meeting_type="review", round_no=1, leaders=leaders)
    statements = {leader.id: HOLD for leader in leaders}
    statements["design-lead"] = DEFERRABLE_HOLD

    admission = consensus.admit_holds(session, statements)

    assert [leader.id for leader in admission.admitted] == ["dev-a", "dev-b", "qa-lead"]
    assert admission.ignored == 1
    assert admission.deferred_notes == [f"Design Pixel: {DEFERRABLE_HOLD}"]
    assert "Review round 1: hold signal ignored for dept dev (dept cap 2)" in _logs(consensus)

    consensus.config.max_holds_per_round = 2
    capped = consensus.admit_holds(session, statements)

    assert [leader.id for leader in capped.admitted] == ["dev-a", "dev-b"]
    assert capped.ignored == 2
