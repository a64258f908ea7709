from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from taskorch.errors import ProcessTimeout, ProviderInvocationError
from taskorch.models import Agent
from taskorch.observability import get_logger
from taskorch.review.transcript import collapse_whitespace
from taskorch.supervisor.base import AgentLauncher

logger = get_logger(__name__)

TurnKind = Literal["opening", "feedback", "summary", "approval"]

REPLY_MAX_CHARS = 2000
FAILED_REPLY_PATTERN = re.compile(r"timeout after|response failed|one-shot-error", re.IGNORECASE)

FALLBACK_REPLIES: dict[str, str] = {
    "opening": "Kickoff noted. Please share concise feedback in order.",
    "feedback": "We have identified key gaps and a top-priority validation item before execution.",
    "summary": "I will consolidate all leader feedback and proceed with the agreed next step.",
    "approval": "Decision noted. We will proceed according to the current meeting conclusion.",
}


def fallback_reply(kind: TurnKind, agent: Agent) -> str:
    return f"{agent.name}: {FALLBACK_REPLIES[kind]}"


def choose_safe_reply(text: str, kind: TurnKind, agent: Agent) -> str:
    """Cleaned reply text, or the canned line for ``kind`` when the reply is unusable."""
    cleaned = collapse_whitespace(text)[:REPLY_MAX_CHARS].strip()
    if not cleaned or FAILED_REPLY_PATTERN.search(cleaned):
        return fallback_reply(kind, agent)
    return cleaned


class ReviewSpeaker(Protocol):
    async def speak(self, agent: Agent, prompt: str, kind: TurnKind) -> str: ...


@dataclass(slots=True)
class AgentTurnRunner:
    """Runs one meeting turn as a bounded one-shot invocation of the agent's provider."""

    launcher: AgentLauncher
    work_dir: Path
    timeout_seconds: float = 180.0

    async def speak(self, agent: Agent, prompt: str, kind: TurnKind) -> str:
        try:
            text = await self.launcher.run_once(
                agent.provider,
                prompt,
                work_dir=self.work_dir,
                timeout_seconds=self.timeout_seconds,
                model=agent.model,
            )
        except (ProviderInvocationError, ProcessTimeout) as exc:
            logger.warning("meeting turn failed for %s (%s): %s", agent.id, kind, exc)
            return fallback_reply(kind, agent)
        return choose_safe_reply(text, kind, agent)
