from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from taskorch.errors import WorkflowInterrupted
from taskorch.models import Agent
from taskorch.observability import get_logger, task_context
from taskorch.review.classifier import RoundMode, round_mode
from taskorch.review.meeting import MeetingRunner, MeetingSession
from taskorch.review.memo import (
    HOLD_FALLBACK_ITEM,
    collect_revision_memo_items,
    format_final_memo,
    format_project_memo,
    normalize_revision_note,
)
from taskorch.review.transcript import clip_text

if TYPE_CHECKING:
    from taskorch.subtasks import SubtaskPlanner

logger = get_logger(__name__)

ReviewDecision = Literal["approved", "remediation", "next_round", "interrupted", "failed", "skipped"]

DEFERRED_NOTE_MAX_CHARS = 160
RECENT_MEMO_ITEMS = 4

# (turn objective, stance hint) per round mode
OPENING_TURN: dict[RoundMode, tuple[str, str]] = {
    "parallel_remediation": (
        "Kick off round 1 review discussion and ask each leader for all required remediation "
        "items in one pass.",
        "Capture every remediation requirement now so execution can proceed in parallel once.",
    ),
    "merge_synthesis": (
        "Kick off round 2 merge-synthesis discussion and ask each leader to verify consolidated "
        "remediation output.",
        "Focus on consolidation and merge readiness. Convert concerns into documented residual "
        "risks instead of new subtasks.",
    ),
    "final_decision": (
        "Kick off round 3 final decision discussion and confirm that no additional remediation "
        "round will be opened.",
        "Finalize approval decision and documentation package. Do not ask for new remediation "
        "subtasks.",
    ),
}
FEEDBACK_TURN: dict[RoundMode, tuple[str, str]] = {
    "parallel_remediation": (
        "Provide concise review feedback and list all revision requirements that must be "
        "addressed in round 1.",
        "If revision is needed, explicitly state what must be fixed before approval.",
    ),
    "merge_synthesis": (
        "Validate merged remediation output and state whether it is ready for final-round sign-off.",
        "Do not ask for a new remediation round; if concerns remain, describe residual risks for "
        "final documentation.",
    ),
    "final_decision": (
        "Provide final approval opinion with documentation-ready rationale.",
        "No additional remediation is allowed in this final round. Choose final approve or "
        "approve-with-residual-risk.",
    ),
}
SOLO_TURN: dict[RoundMode, tuple[str, str]] = {
    "parallel_remediation": (
        "As the only reviewer, provide your single-party review conclusion with complete "
        "remediation checklist.",
        "Summarize risks, dependencies, and confidence level in one concise message.",
    ),
    "merge_synthesis": (
        "As the only reviewer, decide whether round 1 remediation is fully consolidated and "
        "merge-ready.",
        "Summarize risks, dependencies, and confidence level in one concise message.",
    ),
    "final_decision": (
        "As the only reviewer, publish the final approval conclusion and documentation note.",
        "No further remediation round is allowed. Conclude with final decision and documented "
        "residual risks if any.",
    ),
}
SUMMARY_TURN: dict[RoundMode, tuple[str, str]] = {
    "merge_synthesis": (
        "Synthesize round 2 consolidation, clarify merge readiness, and announce move to final "
        "decision round.",
        "No new remediation subtasks in round 2. Convert concerns into documented residual-risk "
        "notes.",
    ),
    "final_decision": (
        "Synthesize final review outcome and publish final documentation/approval direction.",
        "Finalize now. Additional remediation rounds are not allowed.",
    ),
}
REMEDIATION_SUMMARY_TURN = (
    "Synthesize feedback and announce concrete remediation subtasks and execution handoff.",
    "State that remediation starts immediately and review will restart only after remediation "
    "is completed.",
)
APPROVAL_SUMMARY_TURN = (
    "Synthesize feedback and request final all-leader approval.",
    "State that the final review package is ready for immediate approval.",
)
FINAL_TURN_OBJECTIVES: dict[RoundMode, str] = {
    "parallel_remediation": "State your final approval decision for this review round.",
    "merge_synthesis": (
        "State whether this consolidated package is ready to proceed into final decision round."
    ),
    "final_decision": "State your final approval decision and documentation conclusion for this task.",
}
FINAL_TURN_STANCES: dict[str, str] = {
    "merge_synthesis": (
        "If concerns remain, record residual risk only. Do not request a new remediation subtask "
        "round."
    ),
    "final_decision": (
        "This is the final round. Additional remediation is not allowed; conclude with approve or "
        "approve-with-documented-risk."
    ),
    "ready": (
        "Approve the current review package if ready; otherwise hold approval with concrete "
        "revision items."
    ),
    "revise_owner": "Hold approval until your requested revision is reflected.",
    "conditional": "Agree with conditional approval pending revision reflection.",
}


@dataclass(slots=True)
class HoldAdmission:
    admitted: list[Agent] = field(default_factory=list)
    deferred_notes: list[str] = field(default_factory=list)
    ignored: int = 0


@dataclass(slots=True)
class ReviewOutcome:
    task_id: str
    decision: ReviewDecision
    round: int = 0
    mode: RoundMode | None = None
    admitted_holds: list[str] = field(default_factory=list)
    deferred_notes: list[str] = field(default_factory=list)
    memo_items: list[str] = field(default_factory=list)
    subtasks_created: int = 0
    meeting_id: str | None = None
    reason: str = ""


class ReviewConsensus(MeetingRunner):
    """Runs one review round for a task and reports its outcome.

    The caller acts on the outcome: ``approved`` finalizes the task,
    ``remediation`` restarts the owner with the seeded revision subtasks and
    ``next_round`` re-enters review after a short delay. The review lock for
    the task is always released before ``run`` returns.
    """

    meeting_label = "Review meeting"
    active_statuses = frozenset({"review"})

    def __init__(self, *args, planner: SubtaskPlanner, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.planner = planner

    async def run(self, task_id: str) -> ReviewOutcome:
        lock_key = self.store.try_acquire_review_lock(task_id)
        if lock_key is None:
            return ReviewOutcome(task_id, "skipped", reason="review already in flight")
        session: MeetingSession | None = None
        try:
            session = MeetingSession(
                task=self.state.ensure_active(task_id, self.active_statuses), meeting_type="review"
            )
            with task_context(task_id):
                return await self._conduct(session)
        except WorkflowInterrupted as exc:
            if session is not None:
                self._finish(session, "failed")
            self.store.clear_task(task_id)
            if exc.reason != "deleted":
                self.state.log(task_id, f"Review meeting aborted due to task state change ({exc.reason})")
            return ReviewOutcome(
                task_id,
                "interrupted",
                round=session.round_no if session else 0,
                reason=exc.reason,
            )
        except Exception as exc:
            logger.exception("review consensus failed (task=%s)", task_id)
            title = session.task.title if session else task_id
            self.state.log(task_id, f"Review consensus meeting error: {exc}", kind="error")
            self.notifier.notify_all(
                f"Error while processing review round for '{title}': {exc}", task_id=task_id
            )
            if session is not None:
                self._finish(session, "failed")
            return ReviewOutcome(
                task_id, "failed", round=session.round_no if session else 0, reason=str(exc)
            )
        finally:
            self.store.release(lock_key)
            self.store.clear_round(task_id)

    def remediation_requests_used(self, task_id: str) -> int:
        return sum(
            1
            for meeting in self.repository.list_meetings(task_id, "review")
            if meeting.status == "revision_requested"
        )

    async def _conduct(self, session: MeetingSession) -> ReviewOutcome:
        task_id = session.task_id
        title = session.task.title
        session.leaders = self.directory.review_leaders(task_id)
        if not session.leaders:
            self.state.log(task_id, "Review consensus: no leaders available, approving")
            return ReviewOutcome(task_id, "approved", reason="no leaders")

        latest = self.repository.latest_meeting(task_id, "review")
        resume = latest if latest is not None and latest.status == "in_progress" else None
        if resume is not None:
            session.round_no = resume.round
        else:
            session.round_no = (latest.round if latest else 0) + 1
        self.store.set_round(task_id, session.round_no)

        max_rounds = self.config.max_rounds
        if resume is None and session.round_no > max_rounds:
            self.state.log(
                task_id,
                f"Review round {session.round_no} exceeds max_rounds={max_rounds}; "
                "forcing final decision",
            )
            self._append_memo(
                session,
                format_final_memo(session.round_no, [], residual_risk=True),
                f"Project memo appended (review round {session.round_no}, final package, "
                "residual_risk=yes)",
            )
            self._notify(
                session,
                f"'{title}' exceeded max review rounds ({max_rounds}). Additional revision rounds "
                "are closed and we are moving to final approval decision.",
            )
            return ReviewOutcome(
                task_id, "approved", round=session.round_no, reason="max rounds exceeded"
            )

        mode = round_mode(session.round_no)
        self._ensure_active(session)
        meeting = self._open(session, resume=resume)
        verb = "resumed" if resume is not None else "started"
        self._notify(session, f"'{title}' review round {session.round_no} {verb} ({mode}).")
        logger.info("review round %s %s (task=%s, mode=%s)", session.round_no, verb, task_id, mode)

        planning_leader, *others = session.leaders
        needs_revision = False
        revise_owner: Agent | None = None

        objective, stance = OPENING_TURN[mode]
        await self._turn(session, planning_leader, "opening", objective=objective, stance=stance)
        await self._turn_pause(session)

        for leader in others:
            objective, stance = FEEDBACK_TURN[mode]
            text = await self._turn(session, leader, "feedback", objective=objective, stance=stance)
            if self.classifier.classify(text) == "hold":
                needs_revision = True
                revise_owner = revise_owner or leader
            await self._turn_pause(session)

        if not others:
            objective, stance = SOLO_TURN[mode]
            await self._turn(
                session, planning_leader, "feedback", objective=objective, stance=stance
            )
            await self._turn_pause(session)

        if mode == "parallel_remediation":
            objective, stance = REMEDIATION_SUMMARY_TURN if needs_revision else APPROVAL_SUMMARY_TURN
        else:
            objective, stance = SUMMARY_TURN[mode]
        await self._turn(session, planning_leader, "summary", objective=objective, stance=stance)
        await self._turn_pause(session)

        final_statements: dict[str, str] = {}
        for leader in session.leaders:
            stance = self._final_stance(mode, needs_revision, revise_owner, leader)
            text = await self._turn(
                session, leader, "approval", objective=FINAL_TURN_OBJECTIVES[mode], stance=stance
            )
            final_statements[leader.id] = text
            if self.classifier.classify(text) == "hold":
                needs_revision = True
                revise_owner = revise_owner or leader
            await self._turn_pause(session)

        admission = self.admit_holds(session, final_statements)
        await self._turn_pause(session)

        outcome = ReviewOutcome(
            task_id,
            "approved",
            round=session.round_no,
            mode=mode,
            admitted_holds=[leader.id for leader in admission.admitted],
            deferred_notes=list(admission.deferred_notes),
            meeting_id=meeting.id,
        )
        if not admission.admitted:
            return self._approve(session, mode, admission, outcome)
        return self._request_revision(session, mode, outcome)

    @staticmethod
    def _final_stance(
        mode: RoundMode, needs_revision: bool, revise_owner: Agent | None, leader: Agent
    ) -> str:
        if mode != "parallel_remediation":
            return FINAL_TURN_STANCES[mode]
        if not needs_revision:
            return FINAL_TURN_STANCES["ready"]
        if revise_owner is not None and revise_owner.id == leader.id:
            return FINAL_TURN_STANCES["revise_owner"]
        return FINAL_TURN_STANCES["conditional"]

    def admit_holds(self, session: MeetingSession, final_statements: dict[str, str]) -> HoldAdmission:
        """Apply deferral conversion, then the per-round and per-department hold caps."""
        round_no = session.round_no
        round_cap = self.config.max_holds_per_round
        dept_cap = self.config.max_holds_per_dept_per_round
        admission = HoldAdmission()
        per_department: dict[str, int] = {}
        for leader in session.leaders:
            text = final_statements.get(leader.id, "")
            if self.classifier.classify(text) != "hold":
                continue
            if self.classifier.is_deferrable_hold(text):
                department = self.directory.department_name(leader.department_id)
                admission.deferred_notes.append(
                    f"{department} {leader.name}: {clip_text(text, DEFERRED_NOTE_MAX_CHARS)}"
                )
                self.state.log(
                    session.task_id,
                    f"Review round {round_no}: converted deferrable hold to post-merge "
                    f"monitoring ({leader.id})",
                )
                continue
            if len(admission.admitted) >= round_cap:
                admission.ignored += 1
                self.state.log(
                    session.task_id,
                    f"Review round {round_no}: hold signal ignored (round cap {round_cap})",
                )
                continue
            department_key = leader.department_id or f"agent:{leader.id}"
            count = per_department.get(department_key, 0)
            if count >= dept_cap:
                admission.ignored += 1
                self.state.log(
                    session.task_id,
                    f"Review round {round_no}: hold signal ignored for dept {department_key} "
                    f"(dept cap {dept_cap})",
                )
                continue
            per_department[department_key] = count + 1
            admission.admitted.append(leader)
        return admission

    def _approve(
        self,
        session: MeetingSession,
        mode: RoundMode,
        admission: HoldAdmission,
        outcome: ReviewOutcome,
    ) -> ReviewOutcome:
        task_id = session.task_id
        round_no = session.round_no
        if admission.deferred_notes:
            self._append_memo(
                session,
                format_project_memo("review", round_no, admission.deferred_notes),
                f"Project memo appended (review round {round_no}, "
                f"items={len(admission.deferred_notes)})",
            )
            self.state.log(
                task_id,
                f"Review round {round_no}: deferred {len(admission.deferred_notes)} hold opinions "
                "to SLA monitoring checklist",
            )
            self._notify(
                session,
                f"In review round {round_no} for '{session.task.title}', "
                f"{len(admission.deferred_notes)} hold opinions were classified as out of scope "
                "and moved to the post-merge monitoring checklist.",
            )
        self.state.log(task_id, f"Review consensus round {round_no}: all leaders approved")
        if mode == "final_decision":
            residual = bool(admission.deferred_notes)
            self._append_memo(
                session,
                format_final_memo(round_no, session.transcript, residual_risk=residual),
                f"Project memo appended (review round {round_no}, final package, "
                f"residual_risk={'yes' if residual else 'no'})",
            )
        self._notify(session, f"'{session.task.title}' is approved by all leaders. Proceeding to Done.")
        self._finish(session, "completed")
        return outcome

    def _request_revision(
        self, session: MeetingSession, mode: RoundMode, outcome: ReviewOutcome
    ) -> ReviewOutcome:
        task_id = session.task_id
        round_no = session.round_no
        title = session.task.title
        raw_items = collect_revision_memo_items(
            session.transcript,
            max_items=self.config.max_memo_items_per_round,
            max_per_department=self.config.max_memo_items_per_dept,
        )
        fresh, duplicates = self.repository.reserve_memo_items(
            task_id, round_no, [(normalize_revision_note(item), item) for item in raw_items]
        )
        action_items = fresh or [HOLD_FALLBACK_ITEM]
        memo_items = fresh or self.repository.recent_memo_items(task_id, RECENT_MEMO_ITEMS) or action_items
        self._append_memo(
            session,
            format_project_memo("review", round_no, memo_items),
            f"Project memo appended (review round {round_no}, items={len(memo_items)})",
        )
        self.state.log(
            task_id,
            f"Review consensus round {round_no}: revision requested "
            f"(mode={mode}, new_items={len(fresh)}, duplicates={duplicates})",
        )
        outcome.memo_items = list(action_items)

        budget = self.config.max_remediation_requests
        budget_left = self.remediation_requests_used(task_id) < budget
        if mode == "parallel_remediation" and budget_left:
            created = self.planner.seed_review_revision_subtasks(session.task, action_items)
            self.state.log(
                task_id,
                f"Review consensus round {round_no}: revision subtasks queued for parallel "
                f"remediation ({created})",
            )
            self._notify(
                session,
                f"Review round {round_no} for '{title}' is hold/conditional. Created {created} "
                "revision subtasks at once and switching to parallel remediation.",
            )
            self._finish(session, "revision_requested")
            outcome.decision = "remediation"
            outcome.subtasks_created = created
            return outcome

        if mode == "parallel_remediation":
            self.state.log(
                task_id,
                f"Review consensus round {round_no}: remediation request cap reached "
                f"({budget}/task), skipping additional remediation",
            )
            self._notify(
                session,
                f"'{title}' reached the remediation-request cap ({budget} per task). Skipping "
                "additional remediation and moving to the next review round.",
            )

        if mode != "final_decision":
            self.state.log(
                task_id,
                f"Review consensus round {round_no}: residual risk documented, no further "
                "remediation",
            )
            self._finish(session, "completed")
            outcome.decision = "next_round"
            return outcome

        self._append_memo(
            session,
            format_final_memo(round_no, session.transcript, residual_risk=True),
            f"Project memo appended (review round {round_no}, final package, residual_risk=yes)",
        )
        self._notify(
            session,
            f"In review round {round_no} for '{title}', residual risks were embedded in the final "
            "document package. Closing with final approval decision and no further remediation.",
        )
        self._finish(session, "completed")
        outcome.reason = "final decision with residual risk"
        return outcome
