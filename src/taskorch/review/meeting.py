from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from taskorch.config import ReviewConfig
from taskorch.directory import AgentDirectory
from taskorch.models import (
    Agent,
    Meeting,
    MeetingStatus,
    MeetingType,
    Task,
    new_id,
    to_row,
    utcnow_iso,
)
from taskorch.notify import Notifier
from taskorch.observability import get_logger
from taskorch.prompts import MEETING_CONTEXT_MAX_CHARS, build_meeting_prompt, resolve_language
from taskorch.review.classifier import ReviewSignalClassifier
from taskorch.review.memo import append_memo_block
from taskorch.review.speakers import ReviewSpeaker, TurnKind
from taskorch.review.transcript import (
    TranscriptLine,
    clip_text,
    compact_prompt_text,
    format_transcript_for_prompt,
)
from taskorch.state_machine import TaskStateMachine
from taskorch.store.base import TaskRepository
from taskorch.workflow_store import WorkflowStore

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

SPEECH_PREVIEW_MAX_CHARS = 180


def role_label(agent: Agent) -> str:
    return "Team Leader" if agent.is_leader else agent.role.replace("_", " ").title()


@dataclass(slots=True)
class MeetingSession:
    """Per-meeting working state: the task, its meeting row and the live transcript."""

    task: Task
    meeting_type: MeetingType
    round_no: int = 0
    leaders: list[Agent] = field(default_factory=list)
    meeting: Meeting | None = None
    transcript: list[TranscriptLine] = field(default_factory=list)
    lang: str = "en"

    @property
    def task_id(self) -> str:
        return self.task.id


class MeetingRunner:
    """Turn sequencing shared by the planning meeting and the review consensus."""

    meeting_label = "Meeting"
    active_statuses: frozenset[str] = frozenset()

    def __init__(
        self,
        repository: TaskRepository,
        store: WorkflowStore,
        state: TaskStateMachine,
        directory: AgentDirectory,
        speaker: ReviewSpeaker,
        classifier: ReviewSignalClassifier,
        notifier: Notifier,
        config: ReviewConfig,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.store = store
        self.state = state
        self.directory = directory
        self.speaker = speaker
        self.classifier = classifier
        self.notifier = notifier
        self.config = config
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _ensure_active(self, session: MeetingSession) -> None:
        self.state.ensure_active(session.task_id, self.active_statuses)

    def _open(self, session: MeetingSession, *, resume: Meeting | None = None) -> Meeting:
        if resume is not None:
            session.meeting = resume
        else:
            session.meeting = self.repository.create_meeting(
                Meeting(
                    id=new_id(),
                    task_id=session.task_id,
                    meeting_type=session.meeting_type,
                    round=session.round_no,
                )
            )
        session.lang = resolve_language(session.task.description or session.task.title)
        for seat, leader in enumerate(session.leaders):
            self.store.mark_presence(leader.id, self.config.presence_seconds)
            self.notifier.broadcast(
                "meeting_call",
                {
                    "task_id": session.task_id,
                    "agent_id": leader.id,
                    "seat_index": seat,
                    "phase": session.meeting_type,
                    "action": "arrive",
                },
            )
        return session.meeting

    async def _turn(
        self,
        session: MeetingSession,
        leader: Agent,
        kind: TurnKind,
        *,
        objective: str,
        stance: str,
    ) -> str:
        self._ensure_active(session)
        prompt = build_meeting_prompt(
            leader,
            meeting_label=self.meeting_label,
            round_no=session.round_no,
            task_title=session.task.title,
            task_context=compact_prompt_text(session.task.description, MEETING_CONTEXT_MAX_CHARS),
            department_name=self.directory.department_name(leader.department_id),
            role_label=role_label(leader),
            transcript_text=format_transcript_for_prompt(
                session.transcript,
                max_turns=self.config.transcript_max_turns,
                max_line_chars=self.config.transcript_line_max_chars,
                max_total_chars=self.config.transcript_total_max_chars,
            ),
            turn_objective=objective,
            stance_hint=stance,
            lang=session.lang,
        )
        text = await self.speaker.speak(leader, prompt, kind)
        self._ensure_active(session)
        self._record(session, leader, text)
        return text

    def _record(self, session: MeetingSession, leader: Agent, text: str) -> None:
        line = TranscriptLine(
            speaker=leader.name,
            department=self.directory.department_name(leader.department_id),
            role=role_label(leader),
            content=text,
            speaker_agent_id=leader.id,
        )
        session.transcript.append(line)
        if session.meeting is not None:
            self.repository.append_meeting_entry(
                session.meeting.id,
                speaker_agent_id=leader.id,
                speaker_name=line.speaker,
                department_name=line.department,
                role_label=line.role,
                content=text,
            )
        self.store.mark_presence(leader.id, self.config.presence_seconds)
        payload = {
            "task_id": session.task_id,
            "agent_id": leader.id,
            "phase": session.meeting_type,
            "round": session.round_no,
            "line": clip_text(text, SPEECH_PREVIEW_MAX_CHARS),
        }
        if session.meeting_type == "review":
            payload["decision"] = self.classifier.classify(text)
        self.notifier.broadcast("meeting_speech", payload)

    async def _pause(self, session: MeetingSession, low: float, high: float) -> None:
        await self._sleep(self._rng.uniform(low, max(low, high)))
        self._ensure_active(session)

    async def _turn_pause(self, session: MeetingSession) -> None:
        await self._pause(
            session, self.config.turn_delay_min_seconds, self.config.turn_delay_max_seconds
        )

    def _append_memo(self, session: MeetingSession, block: str, log_message: str) -> None:
        task = self.state.get(session.task_id)
        updated = self.repository.update_task(
            session.task_id, description=append_memo_block(task.description, block)
        )
        session.task = updated
        self.state.log(session.task_id, log_message)
        self.notifier.broadcast("task_update", to_row(updated))

    def _finish(self, session: MeetingSession, status: MeetingStatus) -> None:
        if session.meeting is not None and session.meeting.status == "in_progress":
            session.meeting = self.repository.update_meeting(
                session.meeting.id, status=status, completed_at=utcnow_iso()
            )
        self._dismiss(session)

    def _dismiss(self, session: MeetingSession) -> None:
        if not session.leaders:
            return
        self.store.dismiss([leader.id for leader in session.leaders])
        for leader in session.leaders:
            self.notifier.broadcast(
                "meeting_call",
                {"task_id": session.task_id, "agent_id": leader.id, "action": "dismiss"},
            )

    def _notify(self, session: MeetingSession, message: str) -> None:
        self.notifier.notify_all(message, task_id=session.task_id)
