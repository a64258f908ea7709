from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import signal
from collections.abc import Callable
from pathlib import Path

import httpx

from taskorch.config import HttpProviderConfig, ProvidersConfig, SupervisorConfig
from taskorch.errors import ProcessTimeout, ProviderInvocationError
from taskorch.observability import get_logger
from taskorch.supervisor.base import (
    AgentLauncher,
    CompletionCallback,
    LaunchRequest,
    RunHandle,
    SupervisedRun,
)
from taskorch.supervisor.http import HttpRun, StaticCredentialResolver, complete_once
from taskorch.supervisor.output import (
    MarkerSink,
    OutputDeduplicator,
    OutputPipeline,
    OutputStream,
    OutputSubscriber,
)
from taskorch.supervisor.providers import (
    CLI_PROVIDERS,
    build_agent_command,
    build_one_shot_command,
    extract_stream_text,
)

logger = get_logger(__name__)

READ_CHUNK_BYTES = 4096


class CliRun(SupervisedRun):
    """One provider CLI child, started in its own process group."""

    def __init__(
        self,
        request: LaunchRequest,
        pipeline: OutputPipeline,
        on_complete: CompletionCallback,
        *,
        command: list[str],
        terminate_grace_seconds: float = 1.2,
        interrupt_term_after_seconds: float = 1.2,
        interrupt_kill_after_seconds: float = 2.6,
    ) -> None:
        super().__init__(request, pipeline, on_complete)
        self.command = command
        self.terminate_grace_seconds = terminate_grace_seconds
        self.interrupt_term_after_seconds = interrupt_term_after_seconds
        self.interrupt_kill_after_seconds = interrupt_kill_after_seconds
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def spawn(self) -> None:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.request.work_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ProviderInvocationError(
                f"Provider binary not found: {self.command[0]}",
                provider=self.provider,
                retriable=False,
            ) from exc
        except OSError as exc:
            raise ProviderInvocationError(
                f"Could not start {self.command[0]}: {exc}",
                provider=self.provider,
                retriable=False,
            ) from exc
        logger.info(
            "spawned agent process (task=%s, provider=%s, pid=%s)",
            self.task_id,
            self.provider,
            self._process.pid,
        )
        self.start()

    async def _write_prompt(self) -> None:
        assert self._process is not None
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(self.request.prompt.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("agent process closed stdin early (task=%s)", self.task_id)
        finally:
            stdin.close()

    async def _pump(self, reader: asyncio.StreamReader | None, stream: OutputStream) -> None:
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await reader.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            self.touch()
            text = decoder.decode(chunk)
            if text:
                self.pipeline.feed(stream, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self.pipeline.feed(stream, tail)

    async def _run_to_exit(self) -> int:
        if self._process is None:
            raise ProviderInvocationError(
                "Agent process was not spawned.", provider=self.provider
            )
        await asyncio.gather(
            self._write_prompt(),
            self._pump(self._process.stdout, "stdout"),
            self._pump(self._process.stderr, "stderr"),
        )
        return await self._process.wait()

    def _signal_group(self, signum: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            return
        except OSError:
            with contextlib.suppress(ProcessLookupError):
                process.send_signal(signum)

    async def _exited_within(self, seconds: float) -> bool:
        process = self._process
        if process is None or process.returncode is not None:
            return True
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=max(0.0, seconds))
        except TimeoutError:
            return False
        return True

    async def terminate(self, reason: str = "stop") -> None:
        if self._stop_reason is None:
            self._stop_reason = reason
        self._signal_group(signal.SIGTERM)
        if not await self._exited_within(self.terminate_grace_seconds):
            logger.warning("escalating to SIGKILL (task=%s)", self.task_id)
            self._signal_group(signal.SIGKILL)

    async def interrupt(self) -> None:
        if self._stop_reason is None:
            self._stop_reason = "interrupt"
        self._signal_group(signal.SIGINT)
        if await self._exited_within(self.interrupt_term_after_seconds):
            return
        self._signal_group(signal.SIGTERM)
        remaining = self.interrupt_kill_after_seconds - self.interrupt_term_after_seconds
        if not await self._exited_within(remaining):
            self._signal_group(signal.SIGKILL)


class ProcessSupervisor(AgentLauncher):
    """Launches agent runs, owns output fan-out and the run log directory."""

    def __init__(
        self,
        config: SupervisorConfig,
        providers: ProvidersConfig,
        *,
        root: Path,
        http_providers: list[HttpProviderConfig] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        credentials: StaticCredentialResolver | None = None,
    ) -> None:
        self.config = config
        self.providers = providers
        self.root = root
        self.log_dir = Path(config.log_dir)
        if not self.log_dir.is_absolute():
            self.log_dir = root / self.log_dir
        self.credentials = credentials or StaticCredentialResolver(http_providers or [])
        self.http_transport = http_transport
        self.deduplicator = OutputDeduplicator(config.output_dedup_window_ms)
        self._subscribers: list[OutputSubscriber] = []
        self.marker_sink: MarkerSink | None = None

    def subscribe(self, subscriber: OutputSubscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(subscriber)

        return unsubscribe

    def log_path(self, task_id: str) -> Path:
        return self.log_dir / f"{task_id}.log"

    def _pipeline(self, task_id: str) -> OutputPipeline:
        return OutputPipeline(
            task_id,
            log_path=self.log_path(task_id),
            deduplicator=self.deduplicator,
            subscribers=self._subscribers,
            marker_sink=self.marker_sink,
            tail_chars=self.config.output_tail_chars,
        )

    async def launch(self, request: LaunchRequest, on_complete: CompletionCallback) -> RunHandle:
        pipeline = self._pipeline(request.task_id)
        if request.provider in self.providers.cli_providers and request.provider in CLI_PROVIDERS:
            command = build_agent_command(
                request.provider, model=request.model, reasoning_level=request.reasoning_level
            )
            run = CliRun(
                request,
                pipeline,
                on_complete,
                command=command,
                terminate_grace_seconds=self.config.terminate_grace_seconds,
                interrupt_term_after_seconds=self.config.interrupt_term_after_seconds,
                interrupt_kill_after_seconds=self.config.interrupt_kill_after_seconds,
            )
            await run.spawn()
            return run
        if request.provider in self.credentials.names():
            invocation = self.credentials.resolve(
                request.provider, request.prompt, model=request.model
            )
            http_run = HttpRun(request, pipeline, on_complete, invocation, transport=self.http_transport)
            http_run.start()
            return http_run
        raise ProviderInvocationError(
            f"Unknown provider: {request.provider}", provider=request.provider
        )

    async def run_once(
        self,
        provider: str,
        prompt: str,
        *,
        work_dir: Path,
        timeout_seconds: float,
        model: str | None = None,
    ) -> str:
        if provider in self.credentials.names():
            invocation = self.credentials.resolve(provider, prompt, model=model, stream=False)
            return await complete_once(
                invocation, timeout_seconds=timeout_seconds, transport=self.http_transport
            )
        if provider not in CLI_PROVIDERS:
            raise ProviderInvocationError(f"Unknown provider: {provider}", provider=provider)

        command = build_one_shot_command(provider, model=model)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(work_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ProviderInvocationError(
                f"Provider binary not found: {command[0]}", provider=provider
            ) from exc
        except OSError as exc:
            raise ProviderInvocationError(
                f"Could not start {command[0]}: {exc}", provider=provider
            ) from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=timeout_seconds
            )
        except TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError, OSError):
                os.killpg(process.pid, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                await process.wait()
            raise ProcessTimeout(
                f"{provider} one-shot run exceeded {timeout_seconds:.0f}s",
                reason="hard",
                elapsed_seconds=timeout_seconds,
            ) from exc
        if process.returncode != 0:
            raise ProviderInvocationError(
                f"{provider} exited with code {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()[:400]}",
                provider=provider,
                exit_code=process.returncode,
                retriable=True,
            )
        return extract_stream_text(stdout.decode("utf-8", errors="replace"))
