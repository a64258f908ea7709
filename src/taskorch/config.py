from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

StorageBackendName = Literal["json", "memory"]
HttpDialect = Literal["anthropic", "openai"]

DEFAULT_CONFIG_FILE = "taskorch.toml"
REVIEW_FINAL_DECISION_ROUND = 3


@dataclass(slots=True)
class SupervisorConfig:
    idle_timeout_seconds: float = 480.0
    hard_timeout_seconds: float = 2700.0
    terminate_grace_seconds: float = 1.2
    interrupt_term_after_seconds: float = 1.2
    interrupt_kill_after_seconds: float = 2.6
    output_dedup_window_ms: int = 1500
    output_tail_chars: int = 2000
    turn_timeout_seconds: float = 180.0
    log_dir: str = ".taskorch/logs"


@dataclass(slots=True)
class ReviewConfig:
    max_rounds: int = REVIEW_FINAL_DECISION_ROUND
    max_holds_per_round: int = 6
    max_holds_per_dept_per_round: int = 2
    max_memo_items_per_round: int = 8
    max_memo_items_per_dept: int = 2
    max_remediation_requests: int = 1
    planning_department_id: str = "planning"
    turn_delay_min_seconds: float = 0.4
    turn_delay_max_seconds: float = 1.3
    next_round_delay_min_seconds: float = 1.2
    next_round_delay_max_seconds: float = 1.9
    review_start_delay_seconds: float = 1.2
    presence_seconds: float = 90.0
    transcript_max_turns: int = 20
    transcript_line_max_chars: int = 180
    transcript_total_max_chars: int = 2400


@dataclass(slots=True)
class DelegationConfig:
    success_delay_min_seconds: float = 0.8
    success_delay_max_seconds: float = 1.4
    failure_delay_seconds: float = 3.0
    sweep_interval_seconds: float = 15.0
    orphan_grace_seconds: float = 600.0
    all_complete_review_delay_seconds: float = 1.2


@dataclass(slots=True)
class StorageConfig:
    backend: StorageBackendName = "json"
    path: str = ".taskorch/state.json"
    lock_timeout_seconds: float = 3.0
    busy_retry_max_attempts: int = 4
    busy_retry_base_delay_ms: int = 40
    busy_retry_max_delay_ms: int = 400
    busy_retry_jitter_ms: int = 20


@dataclass(slots=True)
class ProvidersConfig:
    default_provider: str = "claude"
    cli_providers: list[str] = field(
        default_factory=lambda: ["claude", "codex", "gemini", "opencode"]
    )
    work_dir: str = "."


@dataclass(slots=True)
class HttpProviderConfig:
    name: str
    dialect: HttpDialect = "anthropic"
    url: str = "https://api.anthropic.com/v1/messages"
    model: str = "claude-sonnet-4-5"
    api_key_env: str = "ANTHROPIC_API_KEY"
    max_tokens: int = 4096


@dataclass(slots=True)
class DepartmentConfig:
    id: str
    name: str
    keywords: list[str] = field(default_factory=list)
    sort_order: int = 100


@dataclass(slots=True)
class AgentConfig:
    id: str
    name: str
    department_id: str
    role: str = "member"
    provider: str = "claude"
    model: str | None = None


def _default_departments() -> list[DepartmentConfig]:
    return [
        DepartmentConfig(
            id="planning",
            name="Planning",
            keywords=["plan", "roadmap", "requirement", "spec", "schedule"],
            sort_order=5,
        ),
        DepartmentConfig(
            id="dev",
            name="Development",
            keywords=["implement", "code", "api", "backend", "refactor", "bug"],
            sort_order=0,
        ),
        DepartmentConfig(
            id="design",
            name="Design",
            keywords=["design", "ui", "ux", "layout", "visual"],
            sort_order=1,
        ),
        DepartmentConfig(
            id="qa",
            name="QA",
            keywords=["test", "qa", "regression", "verify", "coverage"],
            sort_order=2,
        ),
    ]


def _default_agents() -> list[AgentConfig]:
    return [
        AgentConfig(id="planning-lead", name="Sage", department_id="planning", role="team_leader"),
        AgentConfig(id="dev-lead", name="Aria", department_id="dev", role="team_leader"),
        AgentConfig(id="dev-1", name="Bolt", department_id="dev", provider="codex"),
        AgentConfig(id="design-lead", name="Pixel", department_id="design", role="team_leader"),
        AgentConfig(id="qa-lead", name="Hawk", department_id="qa", role="team_leader"),
    ]


@dataclass(slots=True)
class OrchestratorConfig:
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    delegation: DelegationConfig = field(default_factory=DelegationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    http_providers: list[HttpProviderConfig] = field(default_factory=list)
    departments: list[DepartmentConfig] = field(default_factory=_default_departments)
    agents: list[AgentConfig] = field(default_factory=_default_agents)

    @classmethod
    def default(cls) -> OrchestratorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OrchestratorConfig:
        defaults = cls()
        departments = data.get("departments")
        agents = data.get("agents")
        config = cls(
            supervisor=SupervisorConfig(**data.get("supervisor", {})),
            review=ReviewConfig(**data.get("review", {})),
            delegation=DelegationConfig(**data.get("delegation", {})),
            storage=StorageConfig(**data.get("storage", {})),
            providers=ProvidersConfig(**data.get("providers", {})),
            http_providers=[HttpProviderConfig(**item) for item in data.get("http_providers", [])],
            departments=(
                [DepartmentConfig(**item) for item in departments]
                if departments is not None
                else defaults.departments
            ),
            agents=(
                [AgentConfig(**item) for item in agents] if agents is not None else defaults.agents
            ),
        )
        clamp_review_limits(config.review)
        return config

    def to_dict(self) -> dict:
        return {
            "supervisor": asdict(self.supervisor),
            "review": asdict(self.review),
            "delegation": asdict(self.delegation),
            "storage": asdict(self.storage),
            "providers": asdict(self.providers),
            "http_providers": [asdict(item) for item in self.http_providers],
            "departments": [asdict(item) for item in self.departments],
            "agents": [asdict(item) for item in self.agents],
        }


def clamp_review_limits(review: ReviewConfig) -> ReviewConfig:
    review.max_rounds = max(REVIEW_FINAL_DECISION_ROUND, min(int(review.max_rounds), 6))
    review.max_holds_per_dept_per_round = max(1, min(int(review.max_holds_per_dept_per_round), 10))
    review.max_holds_per_round = max(
        review.max_holds_per_dept_per_round, min(int(review.max_holds_per_round), 30)
    )
    review.max_memo_items_per_dept = max(1, min(int(review.max_memo_items_per_dept), 8))
    review.max_memo_items_per_round = max(
        review.max_memo_items_per_dept, min(int(review.max_memo_items_per_round), 24)
    )
    review.max_remediation_requests = max(0, int(review.max_remediation_requests))
    return review


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if value >= 0 else None


def apply_env_overrides(
    config: OrchestratorConfig, environ: Mapping[str, str] | None = None
) -> OrchestratorConfig:
    env = os.environ if environ is None else environ

    review_overrides = {
        "REVIEW_MAX_ROUNDS": "max_rounds",
        "REVIEW_MAX_REVISION_SIGNALS_PER_DEPT_PER_ROUND": "max_holds_per_dept_per_round",
        "REVIEW_MAX_REVISION_SIGNALS_PER_ROUND": "max_holds_per_round",
        "REVIEW_MAX_MEMO_ITEMS_PER_DEPT": "max_memo_items_per_dept",
        "REVIEW_MAX_MEMO_ITEMS_PER_ROUND": "max_memo_items_per_round",
    }
    for env_name, attr in review_overrides.items():
        value = _env_int(env, env_name)
        if value is not None:
            setattr(config.review, attr, value)
    clamp_review_limits(config.review)

    idle_ms = _env_int(env, "TASK_RUN_IDLE_TIMEOUT_MS")
    if idle_ms is not None:
        config.supervisor.idle_timeout_seconds = idle_ms / 1000
    hard_ms = _env_int(env, "TASK_RUN_HARD_TIMEOUT_MS")
    if hard_ms is not None:
        config.supervisor.hard_timeout_seconds = hard_ms / 1000
    dedup_ms = _env_int(env, "CLI_OUTPUT_DEDUP_WINDOW_MS")
    if dedup_ms is not None:
        config.supervisor.output_dedup_window_ms = dedup_ms

    sweep_ms = _env_int(env, "SUBTASK_DELEGATION_SWEEP_MS")
    if sweep_ms is not None:
        config.delegation.sweep_interval_seconds = max(5_000, sweep_ms) / 1000
    grace_ms = _env_int(env, "IN_PROGRESS_ORPHAN_GRACE_MS")
    if grace_ms is not None:
        config.delegation.orphan_grace_seconds = max(30_000, grace_ms) / 1000

    attempts = _env_int(env, "SQLITE_BUSY_RETRY_MAX_ATTEMPTS")
    if attempts is not None:
        config.storage.busy_retry_max_attempts = min(attempts, 20)
    base_ms = _env_int(env, "SQLITE_BUSY_RETRY_BASE_DELAY_MS")
    if base_ms is not None:
        config.storage.busy_retry_base_delay_ms = base_ms
    max_ms = _env_int(env, "SQLITE_BUSY_RETRY_MAX_DELAY_MS")
    if max_ms is not None:
        config.storage.busy_retry_max_delay_ms = max_ms
    config.storage.busy_retry_max_delay_ms = max(
        config.storage.busy_retry_base_delay_ms, config.storage.busy_retry_max_delay_ms
    )
    jitter_ms = _env_int(env, "SQLITE_BUSY_RETRY_JITTER_MS")
    if jitter_ms is not None:
        config.storage.busy_retry_jitter_ms = jitter_ms
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_table(header: str, table: dict[str, Any]) -> list[str]:
    lines = [header]
    for key, value in table.items():
        if value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")
    return lines


def dumps_toml(config: OrchestratorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["supervisor", "review", "delegation", "storage", "providers"]:
        lines.extend(_toml_table(f"[{section}]", data[section]))
    for section in ["http_providers", "departments", "agents"]:
        for item in data[section]:
            lines.extend(_toml_table(f"[[{section}]]", item))
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> OrchestratorConfig:
    if not path.exists():
        config = OrchestratorConfig.default()
    else:
        config = OrchestratorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    return apply_env_overrides(config, environ)


def save_config(path: Path, config: OrchestratorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
