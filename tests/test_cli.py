import json
import re
from pathlib import Path

import pytest
from click.testing import CliRunner
from conftest import FakeLauncher

from taskorch.cli import cli
from taskorch.config import load_config, save_config


def _quiet_delays(config_path: Path) -> None:
    config = load_config(config_path)
    config.review.turn_delay_min_seconds = 0.0
    config.review.turn_delay_max_seconds = 0.0
    config.review.next_round_delay_min_seconds = 0.0
    config.review.next_round_delay_max_seconds = 0.0
    config.review.review_start_delay_seconds = 0.0
    config.delegation.success_delay_min_seconds = 0.0
    config.delegation.success_delay_max_seconds = 0.0
    config.delegation.failure_delay_seconds = 0.0
    config.delegation.all_complete_review_delay_seconds = 0.0
    save_config(config_path, config)


def _task_id(output: str) -> str:
    match = re.search(r"^Task: ([0-9a-f]+)$", output, re.MULTILINE)
    assert match is not None, output
    return match.group(1)


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    monkeypatch.chdir(repo)
    monkeypatch.setattr("taskorch.cli._build_launcher", lambda config, repo_root: FakeLauncher())
    return repo


def test_cli_full_lifecycle_commands(repo: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--storage", "json"])
    assert init_result.exit_code == 0, init_result.output
    assert "Initialized taskorch" in init_result.output
    assert "Departments: 4, agents: 5" in init_result.output
    assert (repo / "taskorch.toml").exists()
    assert (repo / ".taskorch").is_dir()
    _quiet_delays(repo / "taskorch.toml")

    submit_result = runner.invoke(cli, ["submit", "Implement login API", "--description", "JWT based"])
    assert submit_result.exit_code == 0, submit_result.output
    assert "Department: Development" in submit_result.output
    task_id = _task_id(submit_result.output)
    assert (repo / ".taskorch" / "state.json").exists()

    list_result = runner.invoke(cli, ["status"])
    assert list_result.exit_code == 0
    assert task_id[:12] in list_result.output
    assert "inbox" in list_result.output

    run_result = runner.invoke(cli, ["run", task_id[:8], "--skip-meeting"])
    assert run_result.exit_code == 0, run_result.output
    assert f"Task {task_id[:12]}: done" in run_result.output
    assert "Review rounds: 1" in run_result.output

    rounds_result = runner.invoke(cli, ["rounds", task_id])
    assert rounds_result.exit_code == 0
    assert "round 1" in rounds_result.output
    assert "completed" in rounds_result.output
    assert "turns=5" in rounds_result.output

    transcript_result = runner.invoke(cli, ["transcript", task_id])
    assert transcript_result.exit_code == 0
    assert "review round 1 (completed)" in transcript_result.output
    assert "  1. Sage [Planning]: LGTM, approved." in transcript_result.output

    json_result = runner.invoke(cli, ["transcript", task_id, "--json"])
    assert json_result.exit_code == 0
    payload = json.loads(json_result.output)
    assert payload["meeting"]["round"] == 1
    assert len(payload["entries"]) == 5

    status_result = runner.invoke(cli, ["status", task_id])
    assert status_result.exit_code == 0
    snapshot = json.loads(status_result.output)
    assert snapshot["task"]["status"] == "done"
    assert [item["round"] for item in snapshot["review_rounds"]] == [1]

    done_result = runner.invoke(cli, ["status", "--status", "done"])
    assert task_id[:12] in done_result.output


def test_cli_pause_and_resume(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _quiet_delays(repo / "taskorch.toml")

    task_id = _task_id(runner.invoke(cli, ["submit", "Implement login API"]).output)

    stop_result = runner.invoke(cli, ["stop", task_id, "--mode", "pause"])
    assert stop_result.exit_code == 0, stop_result.output
    assert f"Task {task_id[:12]}: pending" in stop_result.output

    resume_result = runner.invoke(cli, ["resume", task_id])
    assert resume_result.exit_code == 0, resume_result.output
    assert f"Task {task_id[:12]}: done" in resume_result.output

    retry_result = runner.invoke(cli, ["retry", task_id])
    assert retry_result.exit_code == 0
    assert "Retried delegations: 0" in retry_result.output


def test_cli_cancel_is_final(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    task_id = _task_id(runner.invoke(cli, ["submit", "Implement login API"]).output)

    cancel_result = runner.invoke(cli, ["stop", task_id])
    assert f"Task {task_id[:12]}: cancelled" in cancel_result.output

    resume_result = runner.invoke(cli, ["resume", task_id])
    assert resume_result.exit_code != 0
    assert "cancelled" in resume_result.output


def test_cli_reports_unknown_task_and_missing_meeting(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    missing = runner.invoke(cli, ["run", "nope"])
    assert missing.exit_code != 0
    assert "Task not found: nope" in missing.output

    task_id = _task_id(runner.invoke(cli, ["submit", "Implement login API"]).output)
    no_rounds = runner.invoke(cli, ["rounds", task_id])
    assert "No meetings recorded." in no_rounds.output

    no_meeting = runner.invoke(cli, ["transcript", task_id, "--type", "planned"])
    assert no_meeting.exit_code != 0
    assert "No planned meeting found" in no_meeting.output

    empty_title = runner.invoke(cli, ["submit", "  "])
    assert empty_title.exit_code != 0
    assert "must not be empty" in empty_title.output


def test_cli_status_without_tasks(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init", "--storage", "memory"]).exit_code == 0

    result = runner.invoke(cli, ["status"])

    assert result.exit_code == 0
    assert "No tasks." in result.output
