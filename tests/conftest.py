"""Shared fakes and fixtures (no network, no real sleeping)."""

from collections import deque
from typing import List

import pytest

from agentic_reflection.action_executor import ActionExecutor
from agentic_reflection.action_runner import ActionOutcome, LocalActionRunner
from agentic_reflection.config import ExecutorConfig, RetryConfig
from agentic_reflection.failure_ledger import FailureLedger
from agentic_reflection.models import (
    Command,
    CriterionKind,
    PlannerResult,
    PlanRequest,
    SuccessCriterion,
    Task,
)
from agentic_reflection.planner import Planner


class ScriptedRunner:
    """
    Runner that returns queued outcomes for commands and delegates file
    actions to a real local runner.
    """

    def __init__(self, workspace, command_outcomes=()):
        self.local = LocalActionRunner(workspace)
        self.command_outcomes = deque(command_outcomes)
        self.calls = []

    def __call__(self, action):
        self.calls.append(action)
        if isinstance(action, Command):
            if self.command_outcomes:
                return self.command_outcomes.popleft()
            return ActionOutcome(success=True, exit_code=0, output="")
        return self.local(action)


class RecordingPlanner(Planner):
    """Returns queued planner results (the last one repeats) and records requests."""

    def __init__(self, results: List[PlannerResult]):
        self.results = list(results)
        self.requests: List[PlanRequest] = []

    def plan(self, request: PlanRequest) -> PlannerResult:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.results) - 1)
        return self.results[index]


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def ledger(state_dir):
    return FailureLedger(state_dir)


@pytest.fixture
def fast_retry():
    return RetryConfig(max_retries=3, initial_delay_ms=1.0, max_delay_ms=8.0, backoff_multiplier=2.0)


@pytest.fixture
def sleeps():
    """Collects the delays an executor would have slept for."""
    return []


@pytest.fixture
def make_executor(workspace, fast_retry, sleeps):
    def _make(runner=None, config=None, approval_port=None, events=None, retry_config=None):
        return ActionExecutor(
            runner or ScriptedRunner(workspace),
            workspace,
            config=config or ExecutorConfig(),
            retry_config=retry_config or fast_retry,
            approval_port=approval_port,
            events=events,
            sleep=sleeps.append,
        )
    return _make


@pytest.fixture
def file_task():
    return Task(
        id="task-1",
        title="Create greeting module",
        success_criteria=[
            SuccessCriterion(CriterionKind.FILE_EXISTS, "module exists", "greeting.py"),
        ],
    )
