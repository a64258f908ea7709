from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskorch.config import (
    DEFAULT_CONFIG_FILE,
    OrchestratorConfig,
    load_config,
    save_config,
)
from taskorch.coordinator import WorkflowCoordinator
from taskorch.errors import OrchestratorError
from taskorch.models import Task, to_row
from taskorch.observability import configure_logging
from taskorch.store import BusyRetryPolicy, TaskRepository, call_with_busy_retry, open_repository
from taskorch.supervisor import AgentLauncher, ProcessSupervisor


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OrchestratorConfig
    repository: TaskRepository
    launcher: AgentLauncher
    coordinator: WorkflowCoordinator
    retry: BusyRetryPolicy


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_launcher(config: OrchestratorConfig, repo_root: Path) -> AgentLauncher:
    return ProcessSupervisor(
        config.supervisor,
        config.providers,
        root=repo_root,
        http_providers=config.http_providers,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    repository = open_repository(config.storage, repo_root)
    launcher = _build_launcher(config, repo_root)
    coordinator = WorkflowCoordinator(config, repository, launcher, root=repo_root)
    retry = BusyRetryPolicy.from_config(config.storage)
    try:
        call_with_busy_retry(coordinator.sync_roster, retry)
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        repository=repository,
        launcher=launcher,
        coordinator=coordinator,
        retry=retry,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _resolve_task(runtime: Runtime, task_ref: str) -> Task:
    task = runtime.repository.get_task(task_ref)
    if task is not None:
        return task
    matches = [task for task in runtime.repository.list_tasks() if task.id.startswith(task_ref)]
    if not matches:
        raise click.ClickException(f"Task not found: {task_ref}")
    if len(matches) > 1:
        raise click.ClickException(f"Task reference '{task_ref}' is ambiguous ({len(matches)} matches).")
    return matches[0]


def _echo_task_line(task: Task) -> None:
    click.echo(f"{task.id[:12]} {task.status:<12} {task.title}")


async def _drive(coordinator: WorkflowCoordinator, step: Coroutine[Any, Any, Any]) -> None:
    try:
        await step
        await coordinator.wait_idle()
    finally:
        await coordinator.close()


@click.group()
@click.option("--log-level", default="WARNING", show_default=True)
def cli(log_level: str) -> None:
    """Task workflow orchestrator CLI."""
    configure_logging(log_level)


@cli.command("init")
@click.option("--provider", default=None, help="Default agent provider.")
@click.option("--storage", type=click.Choice(["json", "memory"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(provider: str | None, storage: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if provider:
        config.providers.default_provider = provider
        for agent in config.agents:
            agent.provider = provider
    if storage:
        config.storage.backend = storage  # type: ignore[assignment]
    save_config(config_path, config)
    (repo_root / ".taskorch").mkdir(parents=True, exist_ok=True)

    runtime = _load_runtime(repo_root, config_path)
    click.echo(f"Initialized taskorch in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Storage: {runtime.config.storage.backend} ({runtime.config.storage.path})")
    click.echo(
        f"Departments: {len(runtime.config.departments)}, agents: {len(runtime.config.agents)}"
    )


@cli.command("submit")
@click.argument("title")
@click.option("--description", default="", help="Task brief.")
@click.option("--department", "department_id", default=None)
@click.option("--agent", "agent_id", default=None)
@click.option("--project-path", default=None)
@click.option("--idempotency-key", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def submit_command(
    title: str,
    description: str,
    department_id: str | None,
    agent_id: str | None,
    project_path: str | None,
    idempotency_key: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        task = call_with_busy_retry(
            lambda: runtime.coordinator.submit_task(
                title,
                description,
                department_id=department_id,
                assigned_agent_id=agent_id,
                project_path=project_path,
                idempotency_key=idempotency_key,
            ),
            runtime.retry,
        )
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task: {task.id}")
    click.echo(f"Department: {runtime.coordinator.directory.department_name(task.department_id)}")


@cli.command("run")
@click.argument("task_ref")
@click.option("--skip-meeting", is_flag=True, default=False, help="Skip the planned kickoff meeting.")
@click.option("--agent", "agent_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(task_ref: str, skip_meeting: bool, agent_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    coordinator = runtime.coordinator
    if task.status == "inbox" and agent_id is None:
        step = coordinator.plan_task(task.id, skip_meeting=skip_meeting)
    else:
        step = coordinator.start_execution(task.id, agent_id=agent_id)
    try:
        asyncio.run(_drive(coordinator, step))
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc

    final = coordinator.state.get(task.id)
    click.echo(f"Task {final.id[:12]}: {final.status}")
    meetings = runtime.repository.list_meetings(final.id, "review")
    if meetings:
        click.echo(f"Review rounds: {len(meetings)}")


@cli.command("stop")
@click.argument("task_ref")
@click.option("--mode", type=click.Choice(["pause", "cancel"]), default="cancel", show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def stop_command(task_ref: str, mode: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    try:
        updated = asyncio.run(runtime.coordinator.request_stop(task.id, mode))  # type: ignore[arg-type]
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {updated.id[:12]}: {updated.status}")


@cli.command("resume")
@click.argument("task_ref")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resume_command(task_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    coordinator = runtime.coordinator
    try:
        asyncio.run(_drive(coordinator, coordinator.resume_task(task.id)))
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    final = coordinator.state.get(task.id)
    click.echo(f"Task {final.id[:12]}: {final.status}")


@cli.command("retry")
@click.argument("task_ref")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def retry_command(task_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    coordinator = runtime.coordinator

    async def _retry() -> int:
        try:
            retried = await coordinator.retry_delegations(task.id)
            await coordinator.wait_idle()
            return retried
        finally:
            await coordinator.close()

    try:
        retried = asyncio.run(_retry())
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Retried delegations: {retried}")


@cli.command("status")
@click.argument("task_ref", required=False)
@click.option("--status", "status_filter", default=None, help="Only list tasks in this status.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(task_ref: str | None, status_filter: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if task_ref:
        task = _resolve_task(runtime, task_ref)
        payload = runtime.coordinator.get_task_status(task.id)
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    tasks = runtime.repository.list_tasks(status=status_filter)
    if not tasks:
        click.echo("No tasks.")
        return
    for task in sorted(tasks, key=lambda item: item.created_at):
        _echo_task_line(task)


@cli.command("rounds")
@click.argument("task_ref")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def rounds_command(task_ref: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    meetings = runtime.repository.list_meetings(task.id)
    if not meetings:
        click.echo("No meetings recorded.")
        return
    for meeting in meetings:
        entries = runtime.repository.list_meeting_entries(meeting.id)
        click.echo(
            f"{meeting.meeting_type:<8} round {meeting.round} {meeting.status:<18} "
            f"turns={len(entries)} {meeting.id[:12]}"
        )


@cli.command("transcript")
@click.argument("task_ref")
@click.option("--round", "round_no", type=int, default=None, help="Defaults to the latest round.")
@click.option(
    "--type",
    "meeting_type",
    type=click.Choice(["review", "planned"]),
    default="review",
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def transcript_command(
    task_ref: str, round_no: int | None, meeting_type: str, as_json: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    task = _resolve_task(runtime, task_ref)
    meetings = runtime.repository.list_meetings(task.id, meeting_type)
    if round_no is not None:
        meetings = [meeting for meeting in meetings if meeting.round == round_no]
    if not meetings:
        raise click.ClickException(f"No {meeting_type} meeting found for task {task.id[:12]}.")
    meeting = meetings[-1]
    entries = runtime.repository.list_meeting_entries(meeting.id)
    if as_json:
        payload = {"meeting": to_row(meeting), "entries": [to_row(entry) for entry in entries]}
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    click.echo(f"{meeting_type} round {meeting.round} ({meeting.status})")
    for entry in entries:
        click.echo(f"{entry.seq:>3}. {entry.speaker_name} [{entry.department_name}]: {entry.content}")


@cli.command("serve")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def serve_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(
        f"Serving {runtime.repo_root} (sweep every "
        f"{runtime.config.delegation.sweep_interval_seconds:g}s). Press Ctrl+C to stop."
    )
    try:
        asyncio.run(runtime.coordinator.serve())
    except KeyboardInterrupt:
        click.echo("Stopped.")
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc
