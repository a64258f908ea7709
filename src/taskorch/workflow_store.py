from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from taskorch.models import ExecutionSession, StopMode, new_id, utcnow_iso
from taskorch.supervisor.base import RunHandle

WorkflowPhase = Literal["delegation", "review", "execution"]


@dataclass(slots=True, frozen=True)
class WorkflowToken:
    """Resumable pointer to the next workflow step, rebuildable from persisted rows."""

    task_id: str
    phase: WorkflowPhase
    round: int = 0


def planned_lock_key(task_id: str) -> str:
    return f"planned:{task_id}"


class WorkflowStore:
    """In-memory coordination state keyed by task id; empty after a restart."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._stop_requests: dict[str, StopMode] = {}
        self._handles: dict[str, RunHandle] = {}
        self._launching: set[str] = set()
        self._review_locks: set[str] = set()
        self._review_rounds: dict[str, int] = {}
        self._delegation_guards: set[str] = set()
        self._delegation_tokens: dict[str, WorkflowToken] = {}
        self._completion_notified: set[str] = set()
        self._presence: dict[str, float] = {}
        self._sessions: dict[str, ExecutionSession] = {}

    # stop requests

    def request_stop(self, task_id: str, mode: StopMode) -> None:
        self._stop_requests[task_id] = mode

    def stop_mode(self, task_id: str) -> StopMode | None:
        return self._stop_requests.get(task_id)

    def pop_stop(self, task_id: str) -> StopMode | None:
        return self._stop_requests.pop(task_id, None)

    # run handles

    def register_process(self, task_id: str, handle: RunHandle) -> None:
        self._handles[task_id] = handle

    def get_process(self, task_id: str) -> RunHandle | None:
        return self._handles.get(task_id)

    def pop_process(self, task_id: str) -> RunHandle | None:
        return self._handles.pop(task_id, None)

    def active_handles(self) -> dict[str, RunHandle]:
        return dict(self._handles)

    def try_claim_launch(self, task_id: str) -> bool:
        """Held from the run-start checks until the handle is registered."""
        if task_id in self._launching:
            return False
        self._launching.add(task_id)
        return True

    def release_launch(self, task_id: str) -> None:
        self._launching.discard(task_id)

    def is_launching(self, task_id: str) -> bool:
        return task_id in self._launching

    # review / planning locks

    def try_acquire_review_lock(self, task_id: str, *, planned: bool = False) -> str | None:
        """Return the lock key when acquired, None when already held."""
        key = planned_lock_key(task_id) if planned else task_id
        if key in self._review_locks:
            return None
        self._review_locks.add(key)
        return key

    def release(self, key: str) -> None:
        self._review_locks.discard(key)

    def is_review_locked(self, task_id: str, *, planned: bool = False) -> bool:
        return (planned_lock_key(task_id) if planned else task_id) in self._review_locks

    def set_round(self, task_id: str, round_no: int) -> None:
        self._review_rounds[task_id] = round_no

    def get_round(self, task_id: str) -> int | None:
        return self._review_rounds.get(task_id)

    def clear_round(self, task_id: str) -> None:
        self._review_rounds.pop(task_id, None)

    # delegation

    def try_acquire_delegation(self, task_id: str) -> bool:
        if task_id in self._delegation_guards:
            return False
        self._delegation_guards.add(task_id)
        return True

    def release_delegation(self, task_id: str) -> None:
        self._delegation_guards.discard(task_id)

    def is_delegating(self, task_id: str) -> bool:
        return task_id in self._delegation_guards

    def set_next_delegation_callback(self, child_task_id: str, token: WorkflowToken) -> None:
        self._delegation_tokens[child_task_id] = token

    def pop_delegation_token(self, child_task_id: str) -> WorkflowToken | None:
        return self._delegation_tokens.pop(child_task_id, None)

    def delegation_token(self, child_task_id: str) -> WorkflowToken | None:
        return self._delegation_tokens.get(child_task_id)

    def claim_completion_notice(self, task_id: str) -> bool:
        """True the first time it is called for ``task_id`` since the last reset."""
        if task_id in self._completion_notified:
            return False
        self._completion_notified.add(task_id)
        return True

    def reset_completion_notice(self, task_id: str) -> None:
        self._completion_notified.discard(task_id)

    # meeting presence

    def mark_presence(self, agent_id: str, ttl_seconds: float) -> None:
        self._presence[agent_id] = self._clock() + ttl_seconds

    def present_agents(self) -> list[str]:
        now = self._clock()
        for agent_id in [key for key, until in self._presence.items() if until <= now]:
            del self._presence[agent_id]
        return sorted(self._presence)

    def dismiss(self, agent_ids: list[str]) -> None:
        for agent_id in agent_ids:
            self._presence.pop(agent_id, None)

    # execution sessions

    def ensure_session(self, task_id: str, agent_id: str, provider: str) -> ExecutionSession:
        session = self._sessions.get(task_id)
        if session is not None and session.agent_id == agent_id and session.provider == provider:
            session.last_touched_at = utcnow_iso()
            return session
        session = ExecutionSession(
            session_id=new_id()[:12], task_id=task_id, agent_id=agent_id, provider=provider
        )
        self._sessions[task_id] = session
        return session

    def get_session(self, task_id: str) -> ExecutionSession | None:
        return self._sessions.get(task_id)

    def end_session(self, task_id: str) -> None:
        self._sessions.pop(task_id, None)

    def clear_task(self, task_id: str) -> None:
        """Drop all in-flight review and delegation state for ``task_id``."""
        self._review_locks.discard(task_id)
        self._review_locks.discard(planned_lock_key(task_id))
        self._review_rounds.pop(task_id, None)
        self._delegation_guards.discard(task_id)
        self._completion_notified.discard(task_id)
        for child_id in [
            child for child, token in self._delegation_tokens.items() if token.task_id == task_id
        ]:
            del self._delegation_tokens[child_id]
