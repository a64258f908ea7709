import asyncio
import random
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from taskorch.config import OrchestratorConfig
from taskorch.coordinator import WorkflowCoordinator
from taskorch.errors import ProviderInvocationError
from taskorch.models import Agent, Department
from taskorch.store import InMemoryTaskRepository, TaskRepository
from taskorch.supervisor.base import (
    AgentLauncher,
    CompletionCallback,
    LaunchRequest,
    RunHandle,
    SupervisedRun,
)
from taskorch.supervisor.output import OutputDeduplicator, OutputPipeline

APPROVE = "LGTM, approved."
DEFAULT_TURNS = {
    "opening": "Kicking off: scope and evidence are on the table.",
    "feedback": "Checked the deliverable scope and evidence.",
    "summary": "Summary recorded for this round.",
}


class ScriptedRun(SupervisedRun):
    """Run that replays canned output and exits when released or stopped."""

    def __init__(
        self,
        request: LaunchRequest,
        pipeline: OutputPipeline,
        on_complete: CompletionCallback,
        *,
        exit_code: int,
        output: list[str],
        hold: bool,
    ) -> None:
        super().__init__(request, pipeline, on_complete)
        self.exit_code = exit_code
        self.output = output
        self.gate = asyncio.Event()
        if not hold:
            self.gate.set()

    @property
    def pid(self) -> int | None:
        return None

    async def _run_to_exit(self) -> int:
        for chunk in self.output:
            self.touch()
            self.pipeline.feed("stdout", chunk)
        await self.gate.wait()
        return self.exit_code

    def release(self) -> None:
        self.gate.set()

    async def terminate(self, reason: str = "stop") -> None:
        if self._stop_reason is None:
            self._stop_reason = reason
        self.exit_code = 143
        self.gate.set()

    async def interrupt(self) -> None:
        await self.terminate("interrupt")


class FakeLauncher(AgentLauncher):
    def __init__(
        self,
        *,
        exit_codes: list[int] | None = None,
        outputs: list[list[str]] | None = None,
        hold: bool = False,
        fail_launch: bool = False,
        reply: str = APPROVE,
    ) -> None:
        self.exit_codes = list(exit_codes or [])
        self.outputs = list(outputs or [])
        self.hold = hold
        self.fail_launch = fail_launch
        self.reply = reply
        self.requests: list[LaunchRequest] = []
        self.runs: list[ScriptedRun] = []
        self.one_shot_prompts: list[str] = []

    async def launch(self, request: LaunchRequest, on_complete: CompletionCallback) -> RunHandle:
        self.requests.append(request)
        if self.fail_launch:
            raise ProviderInvocationError("binary missing", provider=request.provider)
        pipeline = OutputPipeline(
            request.task_id,
            log_path=None,
            deduplicator=OutputDeduplicator(0),
            subscribers=[],
            marker_sink=self.marker_sink,
        )
        run = ScriptedRun(
            request,
            pipeline,
            on_complete,
            exit_code=self.exit_codes.pop(0) if self.exit_codes else 0,
            output=self.outputs.pop(0) if self.outputs else ["working...\n"],
            hold=self.hold,
        )
        self.runs.append(run)
        run.start()
        return run

    async def run_once(
        self,
        provider: str,
        prompt: str,
        *,
        work_dir: Path,
        timeout_seconds: float,
        model: str | None = None,
    ) -> str:
        _ = provider, work_dir, timeout_seconds, model
        self.one_shot_prompts.append(prompt)
        return self.reply


class ScriptedSpeaker:
    """Approves by default; ``finals`` queues per-agent replies for approval turns."""

    def __init__(
        self,
        finals: dict[str, list[str]] | None = None,
        feedback: dict[str, list[str]] | None = None,
    ) -> None:
        self.finals = {agent_id: list(replies) for agent_id, replies in (finals or {}).items()}
        self.feedback = {agent_id: list(replies) for agent_id, replies in (feedback or {}).items()}
        self.calls: list[tuple[str, str]] = []

    async def speak(self, agent: Agent, prompt: str, kind: str) -> str:
        _ = prompt
        self.calls.append((agent.id, kind))
        if kind == "approval":
            queue = self.finals.get(agent.id)
            return queue.pop(0) if queue else APPROVE
        if kind == "feedback":
            queue = self.feedback.get(agent.id)
            if queue:
                return queue.pop(0)
        return DEFAULT_TURNS[kind]


class RecordingNotifier:
    def __init__(self) -> None:
        self.notices: list[tuple[str | None, str]] = []
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify_all(
        self, content: str, *, task_id: str | None = None, message_type: str = "chat"
    ) -> None:
        _ = message_type
        self.notices.append((task_id, content))

    def broadcast(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def texts(self) -> list[str]:
        return [content for _, content in self.notices]


async def no_sleep(seconds: float) -> None:
    _ = seconds
    await asyncio.sleep(0)


def quiet_config() -> OrchestratorConfig:
    config = OrchestratorConfig.default()
    config.review.turn_delay_min_seconds = 0.0
    config.review.turn_delay_max_seconds = 0.0
    config.review.next_round_delay_min_seconds = 0.0
    config.review.next_round_delay_max_seconds = 0.0
    config.review.review_start_delay_seconds = 0.0
    config.delegation.success_delay_min_seconds = 0.0
    config.delegation.success_delay_max_seconds = 0.0
    config.delegation.failure_delay_seconds = 0.0
    config.delegation.all_complete_review_delay_seconds = 0.0
    return config


def seed_roster(repository: TaskRepository, config: OrchestratorConfig | None = None) -> None:
    config = config or OrchestratorConfig.default()
    for department in config.departments:
        repository.upsert_department(
            Department(
                id=department.id,
                name=department.name,
                keywords=list(department.keywords),
                sort_order=department.sort_order,
            )
        )
    for agent in config.agents:
        repository.upsert_agent(
            Agent(
                id=agent.id,
                name=agent.name,
                department_id=agent.department_id,
                role=agent.role,
                provider=agent.provider,
            )
        )


CoordinatorFactory = Callable[..., WorkflowCoordinator]


@pytest.fixture
def make_coordinator(tmp_path: Path) -> CoordinatorFactory:
    def _make(
        *,
        launcher: AgentLauncher | None = None,
        speaker: ScriptedSpeaker | None = None,
        repository: TaskRepository | None = None,
        config: OrchestratorConfig | None = None,
    ) -> WorkflowCoordinator:
        config = config or quiet_config()
        config.providers.work_dir = str(tmp_path)
        coordinator = WorkflowCoordinator(
            config,
            repository or InMemoryTaskRepository(),
            launcher or FakeLauncher(),
            notifier=RecordingNotifier(),
            speaker=speaker or ScriptedSpeaker(),
            sleep=no_sleep,
            rng=random.Random(7),
            root=tmp_path,
        )
        coordinator.sync_roster()
        return coordinator

    return _make
