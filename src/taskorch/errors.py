from __future__ import annotations

from typing import Literal

TimeoutReason = Literal["idle", "hard"]


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class TransientStorageError(OrchestratorError):
    """Raised when the persistence layer is momentarily contended.

    Callers outside the coordinator core may retry with
    ``taskorch.store.retry.call_with_busy_retry``.
    """


class IdempotencyConflict(OrchestratorError):
    """Raised when an idempotency key is reused with a different payload."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class RecordNotFoundError(OrchestratorError):
    """Raised when an update targets a record that does not exist."""


class TaskNotFoundError(RecordNotFoundError):
    """Raised when a task id does not resolve to a stored task."""


class InvalidTransitionError(OrchestratorError):
    """Raised when a status change is not allowed by the task state machine."""

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(f"Task {task_id}: transition {from_status} -> {to_status} is not allowed.")
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class WorkflowInterrupted(OrchestratorError):
    """Raised inside a workflow branch once its task was stopped, cancelled or deleted."""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task {task_id} workflow interrupted: {reason}")
        self.task_id = task_id
        self.reason = reason


class ProviderInvocationError(OrchestratorError):
    """Raised when an agent process or HTTP call cannot be started or fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        exit_code: int | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.exit_code = exit_code
        self.retriable = retriable


class ProcessTimeout(OrchestratorError):
    """Raised or reported when a supervised run exceeds its idle or hard timeout."""

    def __init__(self, message: str, *, reason: TimeoutReason, elapsed_seconds: float) -> None:
        super().__init__(message)
        self.reason = reason
        self.elapsed_seconds = elapsed_seconds
