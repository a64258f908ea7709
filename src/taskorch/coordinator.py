from __future__ import annotations

import asyncio
import random
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskorch.config import OrchestratorConfig
from taskorch.delegation import DelegationQueue, DelegationStep
from taskorch.directory import AgentDirectory
from taskorch.errors import InvalidTransitionError, OrchestratorError, TransientStorageError
from taskorch.models import (
    TERMINAL_STATUSES,
    Agent,
    Department,
    StopMode,
    StopRequest,
    Task,
    new_id,
    parse_iso,
    to_row,
)
from taskorch.notify import LoggingNotifier, Notifier, SafeNotifier
from taskorch.observability import get_logger, task_context
from taskorch.prompts import build_execution_prompt
from taskorch.review import (
    AgentTurnRunner,
    KeywordSignalClassifier,
    PlanningMeeting,
    PlanningOutcome,
    ReviewConsensus,
    ReviewOutcome,
    ReviewSignalClassifier,
    ReviewSpeaker,
)
from taskorch.review.meeting import Sleep
from taskorch.review.transcript import clip_text
from taskorch.state_machine import TaskStateMachine
from taskorch.store.base import TaskRepository
from taskorch.subtasks import SubtaskPlanner
from taskorch.supervisor.base import AgentLauncher, LaunchRequest, RunHandle, RunResult, Timeouts
from taskorch.workflow_store import WorkflowStore, WorkflowToken

logger = get_logger(__name__)

RUN_SUCCESS_LOG = "RUN completed (exit code: 0)"
FAILURE_TAIL_CHARS = 600
STATUS_LOG_TAIL = 12
REVIEW_RESUME_STAGGER_SECONDS = 0.4


@dataclass(slots=True)
class SweepReport:
    stops_applied: int = 0
    reconciled: int = 0
    delegations_rearmed: int = 0
    orphans_recovered: int = 0


class WorkflowCoordinator:
    """Moves tasks from inbox to done.

    Runs, meetings and delegation steps never call each other directly: each
    finished step decides the next one here, from the task row and the
    ``WorkflowStore``. Delayed follow-ups are scheduled as background asyncio
    tasks and re-check the task status when they wake up.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        repository: TaskRepository,
        launcher: AgentLauncher,
        *,
        notifier: Notifier | None = None,
        speaker: ReviewSpeaker | None = None,
        classifier: ReviewSignalClassifier | None = None,
        store: WorkflowStore | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
        root: Path | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.launcher = launcher
        self.root = (root or Path.cwd()).resolve()
        self.notifier: Notifier = SafeNotifier(notifier or LoggingNotifier())
        self.store = store or WorkflowStore()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._background: set[asyncio.Task[Any]] = set()

        self.directory = AgentDirectory(
            repository, planning_department_id=config.review.planning_department_id
        )
        self.state = TaskStateMachine(repository, self.store, self.notifier)
        self.planner = SubtaskPlanner(repository, self.directory, self.notifier)
        self.delegation = DelegationQueue(
            repository,
            self.store,
            self.state,
            self.directory,
            self.notifier,
            config.delegation,
            rng=self._rng,
        )
        speaker = speaker or AgentTurnRunner(
            launcher, self.work_dir, timeout_seconds=config.supervisor.turn_timeout_seconds
        )
        meeting_args = (
            repository,
            self.store,
            self.state,
            self.directory,
            speaker,
            classifier or KeywordSignalClassifier(),
            self.notifier,
            config.review,
        )
        self.consensus = ReviewConsensus(
            *meeting_args, planner=self.planner, sleep=sleep, rng=self._rng
        )
        self.planning = PlanningMeeting(*meeting_args, sleep=sleep, rng=self._rng)
        launcher.set_marker_sink(self.planner.apply_marker)

    @property
    def work_dir(self) -> Path:
        path = Path(self.config.providers.work_dir)
        return path if path.is_absolute() else self.root / path

    def sync_roster(self) -> None:
        """Write configured departments and agents, keeping live agent status."""
        for department in self.config.departments:
            self.repository.upsert_department(
                Department(
                    id=department.id,
                    name=department.name,
                    keywords=list(department.keywords),
                    sort_order=department.sort_order,
                )
            )
        for agent_config in self.config.agents:
            existing = self.repository.get_agent(agent_config.id)
            self.repository.upsert_agent(
                Agent(
                    id=agent_config.id,
                    name=agent_config.name,
                    department_id=agent_config.department_id,
                    role=agent_config.role,
                    provider=agent_config.provider,
                    model=agent_config.model,
                    status=existing.status if existing else "idle",
                    current_task_id=existing.current_task_id if existing else None,
                )
            )

    # operator surface

    def submit_task(
        self,
        title: str,
        description: str = "",
        *,
        department_id: str | None = None,
        assigned_agent_id: str | None = None,
        project_path: str | None = None,
        idempotency_key: str | None = None,
    ) -> Task:
        title = title.strip()
        if not title:
            raise OrchestratorError("Task title must not be empty.")
        if department_id is None:
            detected = self.directory.detect_departments(f"{title}\n{description}")
            department_id = detected[0] if detected else None
        candidate = Task(
            id=new_id(),
            title=title,
            description=description,
            department_id=department_id,
            assigned_agent_id=assigned_agent_id,
            project_path=project_path,
        )
        task = self.repository.create_task(candidate, idempotency_key=idempotency_key)
        if task.id != candidate.id:
            logger.info("idempotent replay of task %s (key=%s)", task.id, idempotency_key)
            return task
        self.state.log(
            task.id, f"Task submitted (department={self.directory.department_name(department_id)})"
        )
        self.notifier.broadcast("task_update", to_row(task))
        return task

    async def plan_task(
        self, task_id: str, *, skip_meeting: bool = False, execute: bool = True
    ) -> PlanningOutcome:
        """Hold the kickoff meeting, seed the subtask breakdown and start the first run."""
        task = self.state.get(task_id)
        if task.status == "inbox":
            task = self.state.transition(task_id, "planned", reason="plan accepted")
        if skip_meeting:
            self.state.log(task_id, "Planned meeting skipped by operator")
            outcome = PlanningOutcome(task_id, "planned", reason="meeting skipped")
        else:
            outcome = await self.planning.run(task_id)
            if outcome.decision != "planned":
                return outcome
        task = self.state.get(task_id)
        if task.status not in ("planned", "collaborating"):
            return PlanningOutcome(task_id, "interrupted", reason=task.status)
        self.planner.seed_approved_plan_subtasks(task, outcome.action_items)
        if execute:
            await self.start_execution(task_id)
        return outcome

    async def start_execution(
        self, task_id: str, *, agent_id: str | None = None, continuing: bool = False
    ) -> RunHandle | None:
        existing = self.store.get_process(task_id)
        if existing is not None and not existing.done():
            logger.info("run already active (task=%s)", task_id)
            return existing
        if not self.store.try_claim_launch(task_id):
            logger.info("run start already in progress (task=%s)", task_id)
            return None
        try:
            return await self._launch_run(task_id, agent_id=agent_id, continuing=continuing)
        finally:
            self.store.release_launch(task_id)

    async def _launch_run(
        self, task_id: str, *, agent_id: str | None, continuing: bool
    ) -> RunHandle | None:
        task = self.state.get(task_id)
        if task.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(task_id, task.status, "in_progress")
        agent = self._pick_executor(task, agent_id)
        if agent is None:
            self.state.log(task_id, "Execution deferred: no available agent")
            self.notifier.notify_all(
                f"No available agent to run '{task.title}'. The task stays in {task.status}.",
                task_id=task_id,
            )
            return None

        department_id = agent.department_id or task.department_id
        task = self.state.transition(
            task_id,
            "in_progress",
            reason=f"assigned to {agent.name}",
            assigned_agent_id=agent.id,
            department_id=task.department_id or department_id,
        )
        self.state.occupy_agent(agent.id, task_id)
        session = self.store.ensure_session(task_id, agent.id, agent.provider)
        prompt = build_execution_prompt(
            task,
            agent,
            department_name=self.directory.department_name(department_id),
            session=session,
            subtasks=self.repository.list_subtasks(task_id),
            continuing=continuing,
        )
        request = LaunchRequest(
            task_id=task_id,
            provider=agent.provider,
            prompt=prompt,
            work_dir=Path(task.project_path) if task.project_path else self.work_dir,
            model=agent.model,
            timeouts=Timeouts(
                idle_seconds=self.config.supervisor.idle_timeout_seconds,
                hard_seconds=self.config.supervisor.hard_timeout_seconds,
            ),
        )
        self.state.log(task_id, f"RUN start (agent={agent.name}, provider={agent.provider})")
        try:
            handle = await self.launcher.launch(request, self.handle_run_complete)
        except OrchestratorError as exc:
            logger.warning("launch failed (task=%s): %s", task_id, exc)
            self.state.log(task_id, f"RUN launch failed: {exc}", kind="error")
            self.state.release_agent(agent.id, task_id)
            self.state.transition(task_id, "inbox", reason="launch failed")
            self.notifier.notify_all(
                f"Could not start '{task.title}' with {agent.provider}: {exc}", task_id=task_id
            )
            return None
        if not handle.done():
            self.store.register_process(task_id, handle)
            mode = self.store.stop_mode(task_id)
            if mode is not None:
                await self._signal(handle, mode)
        return handle

    def _pick_executor(self, task: Task, agent_id: str | None) -> Agent | None:
        for candidate_id in (agent_id, task.assigned_agent_id):
            if not candidate_id:
                continue
            agent = self.repository.get_agent(candidate_id)
            if agent is not None and agent.status != "offline":
                return agent
        leader = self.directory.find_department_leader(task.department_id)
        if leader is not None:
            return leader
        if task.department_id:
            for agent in self.repository.list_agents(department_id=task.department_id):
                if agent.status == "idle":
                    return agent
        return self.directory.planning_leader()

    async def request_stop(self, task_id: str, mode: StopMode = "cancel") -> Task:
        """Pause (resumable, ``pending``) or cancel a task and stop its run."""
        task = self.state.get(task_id)
        if task.status in TERMINAL_STATUSES:
            return task
        self.store.request_stop(task_id, mode)
        handle = self.store.get_process(task_id)
        if handle is not None and not handle.done():
            await self._signal(handle, mode)
        else:
            self.repository.enqueue_stop_request(StopRequest(task_id=task_id, mode=mode))
        return self._settle_stop(task_id, mode)

    async def _signal(self, handle: RunHandle, mode: StopMode) -> None:
        logger.info("stopping run (task=%s, mode=%s, pid=%s)", handle.task_id, mode, handle.pid)
        if mode == "pause":
            await handle.interrupt()
        else:
            await handle.terminate("stop")

    def _settle_stop(self, task_id: str, mode: StopMode) -> Task:
        task = self.state.get(task_id)
        target = "pending" if mode == "pause" else "cancelled"
        if task.status in TERMINAL_STATUSES or task.status == target:
            return task
        updated = self.state.transition(task_id, target, reason=f"stop requested ({mode})")
        self.state.release_agent(task.assigned_agent_id, task_id)
        if mode == "cancel":
            self.store.clear_task(task_id)
            handle = self.store.get_process(task_id)
            if (handle is None or handle.done()) and not self.store.is_launching(task_id):
                self.store.pop_stop(task_id)
        verb = "paused" if mode == "pause" else "cancelled"
        self.notifier.notify_all(f"'{task.title}' was {verb} by the operator.", task_id=task_id)
        return updated

    async def resume_task(self, task_id: str) -> RunHandle | None:
        task = self.state.get(task_id)
        if task.status != "pending":
            raise InvalidTransitionError(task_id, task.status, "in_progress")
        self.store.pop_stop(task_id)
        self.repository.discard_stop_requests(task_id)
        self.state.log(task_id, "Resumed by operator")
        return await self.start_execution(task_id, continuing=True)

    async def retry_delegations(self, task_id: str) -> int:
        """Re-dispatch subtasks whose collaboration child failed."""
        self.state.get(task_id)
        retried = self.delegation.retry_failed(task_id)
        if retried and not self.delegation.open_children(task_id):
            await self._after_step(self.delegation.process_delegations(task_id))
        return retried

    def get_task_status(self, task_id: str) -> dict[str, Any]:
        task = self.state.get(task_id)
        handle = self.store.get_process(task_id)
        session = self.store.get_session(task_id)
        logs = self.repository.list_task_logs(task_id)
        return {
            "task": to_row(task),
            "subtasks": [to_row(subtask) for subtask in self.repository.list_subtasks(task_id)],
            "children": [to_row(child) for child in self.state.children(task_id)],
            "review_rounds": [
                {"round": meeting.round, "status": meeting.status, "meeting_id": meeting.id}
                for meeting in self.repository.list_meetings(task_id, "review")
            ],
            "running": handle is not None and not handle.done(),
            "pid": handle.pid if handle is not None else None,
            "stop_requested": self.store.stop_mode(task_id),
            "review_round": self.store.get_round(task_id),
            "delegating": self.store.is_delegating(task_id),
            "session": to_row(session) if session is not None else None,
            "log_tail": [f"[{log.kind}] {log.message}" for log in logs[-STATUS_LOG_TAIL:]],
        }

    # run completion

    async def handle_run_complete(self, result: RunResult) -> None:
        with task_context(result.task_id):
            await self._on_run_complete(result)

    async def _on_run_complete(self, result: RunResult) -> None:
        task_id = result.task_id
        self.store.pop_process(task_id)
        stop_mode = self.store.pop_stop(task_id)
        task = self.repository.get_task(task_id)
        if task is None or stop_mode is not None or task.status != "in_progress":
            if task is not None:
                self.state.log(
                    task_id,
                    f"RUN completion ignored (status={task.status}, exit={result.exit_code}, "
                    f"stop_requested={'yes' if stop_mode else 'no'}, stop_mode={stop_mode or '-'})",
                )
                self.state.release_agent(task.assigned_agent_id, task_id)
            if stop_mode != "pause":
                self.store.clear_task(task_id)
            return

        if result.succeeded:
            self.state.log(task_id, f"RUN completed (exit code: {result.exit_code})")
        else:
            reason = f", reason={result.failure_reason}" if result.failure_reason else ""
            self.state.log(
                task_id, f"RUN failed (exit code: {result.exit_code}{reason})", kind="error"
            )
        self.state.release_agent(task.assigned_agent_id, task_id)
        if result.succeeded:
            await self._on_run_succeeded(task)
        else:
            self._on_run_failed(task, result)

    async def _on_run_succeeded(self, task: Task) -> None:
        self.planner.complete_own_subtasks(task.id)
        if task.is_child:
            self.state.transition(
                task.id, "review", reason="delegated collaboration task waiting for parent consolidation"
            )
            self._settle_child(task.id, succeeded=True)
            return
        self.state.transition(task.id, "review", reason="run completed")
        step = self.delegation.process_delegations(task.id)
        await self._after_step(step)
        if not (step.drained and step.all_complete):
            self._schedule(
                self._review_after(task.id, self.config.review.review_start_delay_seconds),
                name=f"review:{task.id}",
            )

    def _on_run_failed(self, task: Task, result: RunResult) -> None:
        self.state.transition(task.id, "inbox", reason="run failed")
        tail = clip_text(result.output_tail, FAILURE_TAIL_CHARS)
        message = f"'{task.title}' failed (exit code {result.exit_code}) and moved back to Inbox."
        if tail:
            message = f"{message}\n{tail}"
        self.notifier.notify_all(message, task_id=task.id)
        if task.is_child:
            self._settle_child(task.id, succeeded=False)

    # delegation

    def _settle_child(self, child_id: str, *, succeeded: bool) -> None:
        token = self.delegation.on_child_settled(child_id, succeeded=succeeded)
        if token is None:
            return
        delay = self.delegation.next_delay(succeeded=succeeded)
        self._schedule(self._advance_after(token, delay), name=f"delegation:{token.task_id}")

    async def _advance_after(self, token: WorkflowToken, delay: float) -> None:
        await self._sleep(delay)
        with task_context(token.task_id):
            parent = self.repository.get_task(token.task_id)
            if parent is None or parent.status in TERMINAL_STATUSES or self.store.stop_mode(parent.id):
                self.store.release_delegation(token.task_id)
                return
            await self._after_step(self.delegation.advance(token))

    async def _after_step(self, step: DelegationStep) -> None:
        if step.child is not None:
            await self.start_execution(step.child.id)
            return
        if not (step.drained and step.all_complete):
            return
        parent = self.repository.get_task(step.parent_id)
        if parent is not None and parent.status == "review":
            self._schedule(
                self._review_after(
                    step.parent_id, self.config.delegation.all_complete_review_delay_seconds
                ),
                name=f"review:{step.parent_id}",
            )

    # review

    async def finish_review(self, task_id: str) -> ReviewOutcome | None:
        """Run the review consensus once the task's subtasks and children have settled."""
        task = self.repository.get_task(task_id)
        if task is None or task.status != "review" or task.is_child:
            return None
        unfinished = self.state.unfinished_subtasks(task_id)
        if unfinished:
            self.notifier.notify_all(
                f"'{task.title}' is waiting in Review because {len(unfinished)} subtasks are "
                "still unfinished.",
                task_id=task_id,
            )
            self.state.log(task_id, f"Review hold: waiting for {len(unfinished)} unfinished subtasks")
            if not self.store.is_delegating(task_id) and not self.delegation.open_children(task_id):
                await self._after_step(self.delegation.process_delegations(task_id))
            return None
        blocking = self.state.children_blocking_review(task_id)
        if blocking:
            total = len(self.state.children(task_id))
            self.notifier.notify_all(
                f"'{task.title}' is waiting for {len(blocking)} collaboration child task(s) to "
                "reach review before the team-lead meeting starts.",
                task_id=task_id,
            )
            self.state.log(
                task_id,
                "Review hold: waiting for collaboration children to reach review "
                f"({total - len(blocking)}/{total})",
            )
            return None

        outcome = await self.consensus.run(task_id)
        if outcome.decision == "approved":
            self._finalize_approved(task_id)
        elif outcome.decision == "remediation":
            await self._start_remediation(task_id)
        elif outcome.decision == "next_round":
            self._schedule_next_round(task_id, outcome.round)
        return outcome

    def _finalize_approved(self, task_id: str) -> None:
        task = self.repository.get_task(task_id)
        if task is None or task.status != "review":
            return
        for child in self.state.children(task_id):
            if child.status == "review":
                self.state.transition(child.id, "done", reason="parent review approved")
                self.state.release_agent(child.assigned_agent_id, child.id)
        self.state.transition(task_id, "done", reason="all leaders approved")
        self.state.release_agent(task.assigned_agent_id, task_id)
        self.store.clear_task(task_id)
        self.notifier.notify_all(f"'{task.title}' is complete.", task_id=task_id)

    async def _start_remediation(self, task_id: str) -> None:
        step = self.delegation.process_delegations(task_id)
        if step.child is not None:
            await self.start_execution(step.child.id)
        handle = await self.start_execution(task_id, continuing=True)
        if handle is None:
            self.state.log(task_id, "Review remediation queued; waiting for executor run")

    def _schedule_next_round(self, task_id: str, round_no: int) -> None:
        task = self.state.get(task_id)
        self.state.log(
            task_id, f"Review round {round_no}: scheduling round {round_no + 1} finalization meeting"
        )
        self.notifier.notify_all(
            f"'{task.title}' review round {round_no} ended with open items. Round "
            f"{round_no + 1} will consolidate them for a final decision.",
            task_id=task_id,
        )
        review = self.config.review
        delay = self._rng.uniform(
            review.next_round_delay_min_seconds,
            max(review.next_round_delay_min_seconds, review.next_round_delay_max_seconds),
        )
        self._schedule(self._review_after(task_id, delay), name=f"review:{task_id}")

    async def _review_after(self, task_id: str, delay: float) -> None:
        await self._sleep(delay)
        task = self.repository.get_task(task_id)
        if task is None or task.status != "review" or self.store.stop_mode(task_id):
            return
        await self.finish_review(task_id)

    # background steps

    def _schedule(self, step: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        background = asyncio.create_task(step, name=name)
        self._background.add(background)
        background.add_done_callback(self._background_done)
        return background

    def _background_done(self, background: asyncio.Task[Any]) -> None:
        self._background.discard(background)
        if background.cancelled():
            return
        error = background.exception()
        if error is not None:
            logger.error("background step %s failed", background.get_name(), exc_info=error)

    async def wait_idle(self) -> None:
        """Wait until no run is active and no follow-up step is scheduled."""
        while True:
            runs = [handle for handle in self.store.active_handles().values() if not handle.done()]
            steps = list(self._background)
            if not runs and not steps:
                return
            await asyncio.gather(
                *(handle.wait() for handle in runs), *steps, return_exceptions=True
            )

    async def close(self) -> None:
        for background in list(self._background):
            background.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # recovery

    async def sweep(self, *, now: datetime | None = None) -> SweepReport:
        report = SweepReport()
        for request in self.repository.drain_stop_requests():
            if await self._apply_persisted_stop(request):
                report.stops_applied += 1
        report.reconciled = self.delegation.reconcile()
        report.delegations_rearmed = await self._rearm_delegations()
        report.orphans_recovered = await self._recover_orphans(
            now or datetime.now(UTC), self.config.delegation.orphan_grace_seconds
        )
        if report.stops_applied or report.delegations_rearmed or report.orphans_recovered:
            logger.info(
                "sweep: stops=%s reconciled=%s rearmed=%s orphans=%s",
                report.stops_applied,
                report.reconciled,
                report.delegations_rearmed,
                report.orphans_recovered,
            )
        return report

    async def _apply_persisted_stop(self, request: StopRequest) -> bool:
        task = self.repository.get_task(request.task_id)
        if task is None:
            return False
        handle = self.store.get_process(request.task_id)
        if handle is not None and not handle.done():
            self.store.request_stop(request.task_id, request.mode)
            await self._signal(handle, request.mode)
        elif task.status in TERMINAL_STATUSES or task.status == "pending":
            return False
        self._settle_stop(request.task_id, request.mode)
        return True

    async def _rearm_delegations(self) -> int:
        rearmed = 0
        for task in self.repository.list_tasks():
            if task.status not in ("planned", "collaborating", "in_progress", "review"):
                continue
            if self.store.is_delegating(task.id) or self.delegation.open_children(task.id):
                continue
            if not self.delegation.pending_subtasks(task.id):
                continue
            step = self.delegation.process_delegations(task.id)
            if step.child is not None or step.drained:
                rearmed += 1
            await self._after_step(step)
        return rearmed

    async def _recover_orphans(self, now: datetime, grace_seconds: float) -> int:
        recovered = 0
        for task in self.repository.list_tasks(status="in_progress"):
            handle = self.store.get_process(task.id)
            if (handle is not None and not handle.done()) or self.store.is_launching(task.id):
                continue
            touched = parse_iso(task.updated_at) or parse_iso(task.started_at)
            if touched is not None and (now - touched).total_seconds() < grace_seconds:
                continue
            recovered += 1
            logs = [log.message for log in self.repository.list_task_logs(task.id)]
            last_run = next((line for line in reversed(logs) if line.startswith("RUN ")), "")
            if last_run == RUN_SUCCESS_LOG:
                self.state.log(task.id, "Orphan recovery: replaying recorded run success")
                agent = self.repository.get_agent(task.assigned_agent_id or "")
                await self.handle_run_complete(
                    RunResult(task.id, agent.provider if agent else "unknown", exit_code=0)
                )
                continue
            self.state.transition(task.id, "inbox", reason="in progress without an active run")
            self.state.release_agent(task.assigned_agent_id, task.id)
            self.notifier.notify_all(
                f"[WATCHDOG] '{task.title}' was in progress but had no active process. "
                "Recovered to inbox.",
                task_id=task.id,
            )
            if task.is_child:
                self._settle_child(task.id, succeeded=False)
        return recovered

    async def resume_from_store(self) -> list[str]:
        """Rebuild in-flight workflows after a restart; returns tasks re-entering review."""
        self.delegation.reconcile()
        await self._recover_orphans(datetime.now(UTC), 0.0)
        for child in self.repository.list_tasks(status="planned"):
            if child.is_child and self.store.get_process(child.id) is None:
                await self.start_execution(child.id)
        await self._rearm_delegations()
        in_review = sorted(
            (task for task in self.repository.list_tasks(status="review") if not task.is_child),
            key=lambda task: task.updated_at,
        )
        for index, task in enumerate(in_review):
            delay = self.config.review.review_start_delay_seconds + index * REVIEW_RESUME_STAGGER_SECONDS
            self._schedule(self._review_after(task.id, delay), name=f"review:{task.id}")
        return [task.id for task in in_review]

    async def serve(self, *, stop_event: asyncio.Event | None = None) -> None:
        """Resume stored workflows, then sweep until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        resumed = await self.resume_from_store()
        logger.info("coordinator serving (resumed reviews=%s)", len(resumed))
        interval = self.config.delegation.sweep_interval_seconds
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except TimeoutError:
                    try:
                        await self.sweep()
                    except TransientStorageError:
                        logger.warning("sweep skipped: storage busy", exc_info=True)
        finally:
            await self.close()
