from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskorch.errors import ProcessTimeout, ProviderInvocationError, TransientStorageError
from taskorch.observability import get_logger
from taskorch.supervisor.output import MarkerSink, OutputPipeline

logger = get_logger(__name__)


@dataclass(slots=True)
class Timeouts:
    idle_seconds: float = 480.0
    hard_seconds: float = 2700.0


@dataclass(slots=True)
class LaunchRequest:
    task_id: str
    provider: str
    prompt: str
    work_dir: Path
    model: str | None = None
    reasoning_level: str | None = None
    timeouts: Timeouts = field(default_factory=Timeouts)


@dataclass(slots=True)
class RunResult:
    task_id: str
    provider: str
    exit_code: int
    failure_reason: str | None = None
    output_tail: str = ""
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


CompletionCallback = Callable[[RunResult], Awaitable[None]]


class RunHandle(ABC):
    task_id: str
    provider: str

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """OS process id, or None for HTTP runs."""

    @abstractmethod
    async def terminate(self, reason: str = "stop") -> None:
        """Graceful stop escalating to a forceful kill."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Interrupt, then graceful, then forceful stop."""

    @abstractmethod
    async def wait(self) -> RunResult:
        """Wait until the run finished and its completion callback returned."""

    @abstractmethod
    def done(self) -> bool:
        """True once the completion callback has returned."""


class AgentLauncher(ABC):
    marker_sink: MarkerSink | None = None

    def set_marker_sink(self, sink: MarkerSink | None) -> None:
        self.marker_sink = sink

    @abstractmethod
    async def launch(self, request: LaunchRequest, on_complete: CompletionCallback) -> RunHandle:
        """Start one supervised run for ``request.task_id``."""

    @abstractmethod
    async def run_once(
        self,
        provider: str,
        prompt: str,
        *,
        work_dir: Path,
        timeout_seconds: float,
        model: str | None = None,
    ) -> str:
        """Run a bounded one-shot invocation and return its text."""


class SupervisedRun(RunHandle):
    """Timeout watchdog, output pipeline and single completion for one run."""

    def __init__(
        self,
        request: LaunchRequest,
        pipeline: OutputPipeline,
        on_complete: CompletionCallback,
    ) -> None:
        self.request = request
        self.task_id = request.task_id
        self.provider = request.provider
        self.pipeline = pipeline
        self._on_complete = on_complete
        self._started_at = 0.0
        self._last_output_at = 0.0
        self._timeout: ProcessTimeout | None = None
        self._stop_reason: str | None = None
        self._task: asyncio.Task[RunResult] | None = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._started_at = self._last_output_at = loop.time()
        self._task = asyncio.create_task(self._supervise(), name=f"run:{self.task_id}")

    def touch(self) -> None:
        self._last_output_at = asyncio.get_running_loop().time()

    @abstractmethod
    async def _run_to_exit(self) -> int:
        """Drive the underlying process/stream until it ends; return the exit code."""

    async def wait(self) -> RunResult:
        if self._task is None:
            raise RuntimeError("Run was not started.")
        return await asyncio.shield(self._task)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def _next_deadline(self) -> tuple[float, str] | None:
        timeouts = self.request.timeouts
        deadlines: list[tuple[float, str]] = []
        if timeouts.hard_seconds > 0:
            deadlines.append((self._started_at + timeouts.hard_seconds, "hard"))
        if timeouts.idle_seconds > 0:
            deadlines.append((self._last_output_at + timeouts.idle_seconds, "idle"))
        if not deadlines:
            return None
        return min(deadlines, key=lambda item: (item[0], item[1] != "hard"))

    async def _watchdog(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            upcoming = self._next_deadline()
            if upcoming is None:
                return
            deadline, reason = upcoming
            now = loop.time()
            if now < deadline:
                await asyncio.sleep(deadline - now)
                continue
            elapsed = now - self._started_at
            self._timeout = ProcessTimeout(
                f"Run for task {self.task_id} hit the {reason} timeout after {elapsed:.1f}s",
                reason=reason,  # type: ignore[arg-type]
                elapsed_seconds=elapsed,
            )
            logger.warning("run timeout (task=%s, reason=%s)", self.task_id, reason)
            self.pipeline.append_system_line(f"[taskorch] {reason} timeout after {elapsed:.1f}s")
            await self.terminate(f"{reason}_timeout")
            return

    async def _supervise(self) -> RunResult:
        watchdog = asyncio.create_task(self._watchdog())
        error: Exception | None = None
        try:
            exit_code = await self._run_to_exit()
        except ProviderInvocationError as exc:
            error = exc
            exit_code = exc.exit_code if exc.exit_code not in (None, 0) else 1
            self.pipeline.append_system_line(f"[taskorch] {exc}")
        except Exception as exc:
            logger.exception("run failed unexpectedly (task=%s)", self.task_id)
            error = exc
            exit_code = 1
            self.pipeline.append_system_line(f"[taskorch] run failed: {exc}")
        finally:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog
            self.pipeline.close()

        failure_reason: str | None = None
        if self._timeout is not None:
            failure_reason = self._timeout.reason
            error = self._timeout
            if exit_code == 0:
                exit_code = 1
        elif self._stop_reason is not None and exit_code != 0:
            failure_reason = self._stop_reason
        elif error is not None:
            failure_reason = "error"

        result = RunResult(
            task_id=self.task_id,
            provider=self.provider,
            exit_code=exit_code,
            failure_reason=failure_reason,
            output_tail=self.pipeline.tail(),
            error=error,
        )
        try:
            await self._on_complete(result)
        except TransientStorageError:
            logger.error(
                "storage busy while handling run completion (task=%s); not retried",
                self.task_id,
                exc_info=True,
            )
        except Exception:
            logger.exception("run completion handler failed (task=%s)", self.task_id)
            raise
        return result
