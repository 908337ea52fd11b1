"""Tests for the reflect CLI (click CliRunner, static plans only)."""

import json

import pytest
from click.testing import CliRunner

from agentic_reflection.cli import cli
from agentic_reflection.failure_ledger import FailureLedger
from agentic_reflection.models import AttemptRecord, ExecutionResult


SUCCESS_TASK = """
task_id: greet
title: Create greeting
success_criteria:
  - kind: file-exists
    description: module exists
    validation: greeting.py
actions:
  - type: file-write
    target: greeting.py
    content: "print('hi')"
"""

NEVER_DONE_TASK = """
task_id: never
title: Never done
success_criteria:
  - kind: file-exists
    description: impossible file
    validation: missing.py
actions:
  - type: file-write
    target: other.py
    content: ""
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os
    for name in list(os.environ):
        if name.startswith("REFLECT_"):
            monkeypatch.delenv(name)
    monkeypatch.setattr("agentic_reflection.config.load_dotenv", lambda *a, **k: False)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def dirs(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    return {
        "workspace": workspace,
        "state": tmp_path / "state",
        "reports": tmp_path / "reports",
    }


def run_args(task_file, dirs, *extra):
    return [
        "run", str(task_file),
        "--session", "s1",
        "--workspace", str(dirs["workspace"]),
        "--state-dir", str(dirs["state"]),
        "--reports-dir", str(dirs["reports"]),
        *extra,
    ]


# =============================================================================
# RUN
# =============================================================================

class TestRunCommand:
    def test_success_exits_zero(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text(SUCCESS_TASK)

        result = runner.invoke(cli, run_args(task_file, dirs, "--no-trace"))

        assert result.exit_code == 0, result.output
        assert "Task complete" in result.output
        assert (dirs["workspace"] / "greeting.py").read_text() == "print('hi')"
        reports = list(dirs["reports"].glob("greet_*.json"))
        assert len(reports) == 1
        assert json.loads(reports[0].read_text())["state"] == "succeeded"

    def test_success_through_graph(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text(SUCCESS_TASK)
        result = runner.invoke(cli, run_args(task_file, dirs))
        assert result.exit_code == 0, result.output
        assert "LangGraph tracing enabled" in result.output

    def test_reports_default_to_workspace(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text(SUCCESS_TASK)
        args = [
            "run", str(task_file),
            "--session", "s1",
            "--workspace", str(dirs["workspace"]),
            "--state-dir", str(dirs["state"]),
            "--no-trace",
        ]

        result = runner.invoke(cli, args)

        assert result.exit_code == 0, result.output
        reports = list((dirs["workspace"] / "execution" / "reports").glob("greet_*.json"))
        assert len(reports) == 1

    def test_exhaustion_exits_one(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text(NEVER_DONE_TASK)

        result = runner.invoke(cli, run_args(task_file, dirs, "--no-trace", "--max-iterations", "2"))

        assert result.exit_code == 1
        assert "Iteration 2/2" in result.output
        history = FailureLedger(dirs["state"]).get_failure_history("s1", "never")
        assert len(history) == 2

    def test_static_without_actions_is_an_error(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text("task_id: t\ntitle: t\n")
        result = runner.invoke(cli, run_args(task_file, dirs, "--static", "--no-trace"))
        assert result.exit_code == 1
        assert "has no actions" in result.output

    def test_invalid_task_file(self, runner, tmp_path, dirs):
        task_file = tmp_path / "task.yaml"
        task_file.write_text("title: no id\n")
        result = runner.invoke(cli, run_args(task_file, dirs, "--no-trace"))
        assert result.exit_code == 1
        assert "Invalid task definition" in result.output


# =============================================================================
# OBSERVATION COMMANDS
# =============================================================================

def seed_ledger(state_dir, errors):
    ledger = FailureLedger(state_dir)
    for i, error in enumerate(errors, start=1):
        ledger.track_attempt("s1", "t1", AttemptRecord(
            iteration=i,
            timestamp=f"2025-01-01T00:00:0{i}Z",
            actions=(),
            result=ExecutionResult(success=False, task_id="t1", error=error),
            evaluation_reason="✗ file-exists: Missing files: x.py",
            confidence=0.0,
        ))


class TestObservationCommands:
    def test_history(self, runner, dirs):
        seed_ledger(dirs["state"], ["boom", "boom"])
        result = runner.invoke(cli, ["history", "s1", "t1", "--state-dir", str(dirs["state"])])
        assert result.exit_code == 0, result.output
        assert "REFLECTION HISTORY: t1" in result.output
        assert "STUCK" in result.output

    def test_history_empty(self, runner, dirs):
        result = runner.invoke(cli, ["history", "s1", "t1", "--state-dir", str(dirs["state"])])
        assert result.exit_code == 0
        assert "No attempts recorded." in result.output

    def test_patterns_exit_code_flags_persistent(self, runner, dirs):
        seed_ledger(dirs["state"], ["boom", "other", "boom"])
        args = ["patterns", "s1", "t1", "--state-dir", str(dirs["state"])]

        result = runner.invoke(cli, args)
        assert result.exit_code == 1
        assert "2x  boom" in result.output

        result = runner.invoke(cli, [*args, "--threshold", "3"])
        assert result.exit_code == 0

    def test_context_stats(self, runner, dirs):
        result = runner.invoke(cli, ["context-stats", "s1", "--state-dir", str(dirs["state"])])
        assert result.exit_code == 0
        assert "CONTEXT WINDOW: s1" in result.output
        assert "Summarized:  no" in result.output

    def test_check_config(self, runner):
        result = runner.invoke(cli, ["check-config"])
        assert result.exit_code == 0
        assert "reflection.max_iterations: 3" in result.output

    def test_check_config_requires_model_key(self, runner, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        result = runner.invoke(cli, ["check-config", "--require-model"])
        assert result.exit_code == 1
        assert "OPENROUTER_API_KEY" in result.output


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
