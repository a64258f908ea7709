from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from taskorch.errors import WorkflowInterrupted
from taskorch.observability import get_logger, task_context
from taskorch.review.meeting import MeetingRunner, MeetingSession
from taskorch.review.memo import collect_planned_action_items, format_project_memo

logger = get_logger(__name__)

PlanningDecision = Literal["planned", "interrupted", "failed", "skipped"]

MAX_ACTION_ITEMS = 10

OPENING_OBJECTIVE = (
    "Open the planned kickoff meeting and ask each leader for concrete supplement points and "
    "planning actions."
)
OPENING_STANCE = "At Planned stage, do not block kickoff; convert concerns into executable planning items."
FEEDBACK_OBJECTIVE = (
    "Share concise readiness feedback plus concrete supplement items to be planned as subtasks."
)
FEEDBACK_STANCE = "Do not hold approval here; provide actionable plan additions with evidence/check item."
SUMMARY_OBJECTIVE = (
    "Summarize supplement points and announce that they will be converted to subtasks before "
    "execution."
)
SUMMARY_STANCE = "Keep kickoff moving and show concrete planned next steps instead of blocking."
ACTION_OBJECTIVE = "Propose one immediate planning action item for your team in subtask style."
ACTION_STANCE = (
    "State what to do next, what evidence to collect, and who owns it. Do not block kickoff at "
    "this stage."
)


@dataclass(slots=True)
class PlanningOutcome:
    task_id: str
    decision: PlanningDecision
    round: int = 0
    action_items: list[str] = field(default_factory=list)
    meeting_id: str | None = None
    reason: str = ""


class PlanningMeeting(MeetingRunner):
    """Kickoff meeting held while a task is ``planned``; yields action items for seeding."""

    meeting_label = "Planned kickoff meeting"
    active_statuses = frozenset({"planned"})

    async def run(self, task_id: str) -> PlanningOutcome:
        lock_key = self.store.try_acquire_review_lock(task_id, planned=True)
        if lock_key is None:
            return PlanningOutcome(task_id, "skipped", reason="planning already in flight")
        session: MeetingSession | None = None
        try:
            session = MeetingSession(
                task=self.state.ensure_active(task_id, self.active_statuses), meeting_type="planned"
            )
            with task_context(task_id):
                return await self._conduct(session)
        except WorkflowInterrupted as exc:
            if session is not None:
                self._finish(session, "failed")
            self.store.clear_task(task_id)
            if exc.reason != "deleted":
                self.state.log(task_id, f"Planned meeting aborted due to task state change ({exc.reason})")
            return PlanningOutcome(task_id, "interrupted", reason=exc.reason)
        except Exception as exc:
            logger.exception("planning meeting failed (task=%s)", task_id)
            title = session.task.title if session else task_id
            self.state.log(task_id, f"Planned meeting error: {exc}", kind="error")
            self.notifier.notify_all(
                f"Error while processing planned meeting for '{title}': {exc}", task_id=task_id
            )
            if session is not None:
                self._finish(session, "failed")
            return PlanningOutcome(task_id, "failed", reason=str(exc))
        finally:
            self.store.release(lock_key)

    async def _conduct(self, session: MeetingSession) -> PlanningOutcome:
        task_id = session.task_id
        session.leaders = self.directory.review_leaders(task_id)
        if not session.leaders:
            return PlanningOutcome(task_id, "planned", reason="no leaders")
        session.round_no = len(self.repository.list_meetings(task_id, "planned")) + 1

        self._ensure_active(session)
        meeting = self._open(session)
        self._notify(
            session,
            f"'{session.task.title}' planned round {session.round_no} started. Collecting "
            "supplement points and turning them into executable subtasks.",
        )

        planning_leader, *others = session.leaders
        supplement_signals = False
        await self._turn(
            session, planning_leader, "opening", objective=OPENING_OBJECTIVE, stance=OPENING_STANCE
        )
        await self._turn_pause(session)
        for leader in others:
            text = await self._turn(
                session, leader, "feedback", objective=FEEDBACK_OBJECTIVE, stance=FEEDBACK_STANCE
            )
            supplement_signals = supplement_signals or self.classifier.classify(text) == "hold"
            await self._turn_pause(session)

        await self._turn(
            session, planning_leader, "summary", objective=SUMMARY_OBJECTIVE, stance=SUMMARY_STANCE
        )
        await self._turn_pause(session)
        for leader in session.leaders:
            text = await self._turn(
                session, leader, "approval", objective=ACTION_OBJECTIVE, stance=ACTION_STANCE
            )
            supplement_signals = supplement_signals or self.classifier.classify(text) == "hold"
            await self._turn_pause(session)

        items = collect_planned_action_items(
            session.transcript,
            max_items=MAX_ACTION_ITEMS,
            max_per_department=self.config.max_memo_items_per_dept,
        )
        self._append_memo(
            session,
            format_project_memo("planned", session.round_no, items),
            f"Project memo appended (planned round {session.round_no}, items={len(items)})",
        )
        self.state.log(
            task_id,
            f"Planned meeting round {session.round_no}: action items collected ({len(items)}, "
            f"supplement-signals={'yes' if supplement_signals else 'no'})",
        )
        self._notify(
            session,
            f"Planned meeting for '{session.task.title}' is complete. Recorded {len(items)} "
            "improvement items and moving to In Progress.",
        )
        self._finish(session, "completed")
        return PlanningOutcome(
            task_id, "planned", round=session.round_no, action_items=items, meeting_id=meeting.id
        )
