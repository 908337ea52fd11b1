"""Tests for the reflection loop (fakes only, no model calls)."""

import threading

import pytest

from conftest import RecordingPlanner, ScriptedRunner

from agentic_reflection.action_runner import ActionOutcome
from agentic_reflection.config import ReflectionConfig
from agentic_reflection.context_window import ContextWindow
from agentic_reflection.decision_engine import DecisionEngine
from agentic_reflection.errors import ErrorKind
from agentic_reflection.escalation import (
    PROVIDE_GUIDANCE,
    SKIP_TASK,
    STOP_EXECUTION,
    HumanEscalationPort,
    ScriptedEscalationPort,
)
from agentic_reflection.events import (
    REFLECTION_COMPLETED,
    REFLECTION_ITERATION,
    REFLECTION_STARTED,
    EventBus,
    EventRecorder,
)
from agentic_reflection.models import (
    CheckboxState,
    Command,
    DetailedEvaluation,
    FileWrite,
    PlannerResult,
    RunContext,
)
from agentic_reflection.planner import StaticPlanner
from agentic_reflection.reflection_controller import ReflectionController, ReflectionState


# =============================================================================
# FIXTURES
# =============================================================================

class SequenceDecisionEngine:
    """Returns preset confidences in order; the last one repeats."""

    def __init__(self, confidences, threshold=0.8):
        self.confidences = list(confidences)
        self.threshold = threshold
        self.calls = 0

    def evaluate(self, task, execution_result=None):
        confidence = self.confidences[min(self.calls, len(self.confidences) - 1)]
        self.calls += 1
        return DetailedEvaluation(
            confidence=confidence,
            reasoning=f"confidence {confidence}",
            detected=confidence >= self.threshold,
        )


class ExplodingDecisionEngine:
    def evaluate(self, task, execution_result=None):
        raise RuntimeError("evaluator crashed")


@pytest.fixture
def context():
    return RunContext(spec_path="spec.md", session_id="s1")


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def make_controller(workspace, ledger, make_executor, bus):
    def _make(planner, engine=None, runner=None, config=None, escalation=None, **kwargs):
        return ReflectionController(
            planner,
            make_executor(runner=runner or ScriptedRunner(workspace), events=bus),
            engine or DecisionEngine(workspace),
            ledger,
            config=config or ReflectionConfig(),
            escalation=escalation,
            events=bus,
            **kwargs,
        )
    return _make


def failing_command_runner(workspace, error="ModuleNotFoundError: No module named foo", times=10):
    return ScriptedRunner(workspace, [
        ActionOutcome(success=False, error=error, exit_code=1) for _ in range(times)
    ])


# =============================================================================
# SUCCESS
# =============================================================================

class TestSuccess:
    def test_first_iteration_success(self, make_controller, file_task, context, ledger, workspace):
        planner = StaticPlanner([FileWrite("greeting.py", "print('hi')")])
        outcome = make_controller(planner).run(file_task, context)

        assert outcome.success is True
        assert outcome.state == ReflectionState.SUCCEEDED
        assert outcome.iterations_used == 1
        assert outcome.final_confidence == 1.0
        assert outcome.result.files_created == ["greeting.py"]
        assert (workspace / "greeting.py").exists()

        assert file_task.checkbox_state == CheckboxState.COMPLETE
        assert file_task.retry_count == 0
        assert file_task.last_decision.confidence == 1.0
        assert len(ledger.get_failure_history("s1", "task-1")) == 1

    def test_success_on_second_iteration(self, make_controller, file_task, context):
        planner = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("a.py", "")])])
        engine = SequenceDecisionEngine([0.5, 0.95])
        outcome = make_controller(planner, engine=engine).run(file_task, context)

        assert outcome.success is True
        assert outcome.iterations_used == 2
        assert outcome.final_confidence == 0.95
        assert file_task.retry_count == 1

        first, second = planner.requests
        assert first.failure_context.previous_attempts == []
        assert second.failure_context.iteration == 2
        assert len(second.failure_context.previous_attempts) == 1
        assert second.failure_context.previous_attempts[0].confidence == 0.5

    def test_environment_state_accumulates(self, make_controller, file_task, context):
        planner = RecordingPlanner([
            PlannerResult(success=True, actions=[FileWrite("one.py", "")]),
            PlannerResult(success=True, actions=[FileWrite("two.py", "")]),
            PlannerResult(success=True, actions=[FileWrite("one.py", "changed")]),
        ])
        engine = SequenceDecisionEngine([0.0, 0.0, 0.0])
        make_controller(planner, engine=engine).run(file_task, context)

        env = planner.requests[2].failure_context.environment_state
        assert env.files_created == ["one.py", "two.py"]
        assert planner.requests[1].failure_context.environment_state.files_created == ["one.py"]


# =============================================================================
# EXHAUSTION
# =============================================================================

class TestExhaustion:
    def test_criteria_never_met(self, make_controller, file_task, context, ledger):
        escalation = ScriptedEscalationPort()
        planner = StaticPlanner([FileWrite("wrong_name.py", "")])
        outcome = make_controller(planner, escalation=escalation).run(file_task, context)

        assert outcome.success is False
        assert outcome.state == ReflectionState.EXHAUSTED
        assert outcome.iterations_used == 3
        assert outcome.result.error.startswith("Reflection loop exhausted after 3 iterations")
        assert outcome.result.error_kind == ErrorKind.EXHAUSTED.value
        assert "Missing files: greeting.py" in outcome.result.error
        assert file_task.checkbox_state == CheckboxState.FAILED
        assert file_task.retry_count == 2
        assert [a.iteration for a in ledger.get_failure_history("s1", "task-1")] == [1, 2, 3]
        # successful executions are not failure patterns, so nobody was asked
        assert escalation.messages == []

    def test_respects_max_iterations(self, make_controller, file_task, context):
        planner = StaticPlanner([FileWrite("wrong_name.py", "")])
        config = ReflectionConfig(max_iterations=5)
        outcome = make_controller(planner, config=config).run(file_task, context)
        assert outcome.iterations_used == 5
        assert outcome.max_iterations == 5

    def test_planner_failure_is_an_iteration_failure(self, make_controller, file_task, context, ledger):
        planner = RecordingPlanner([PlannerResult(success=False, error="model unavailable")])
        config = ReflectionConfig(pause_on_persistent_failure=False)
        outcome = make_controller(planner, config=config).run(file_task, context)

        assert outcome.state == ReflectionState.EXHAUSTED
        history = ledger.get_failure_history("s1", "task-1")
        assert [a.result.error for a in history] == ["model unavailable"] * 3
        assert all(a.actions == () for a in history)
        assert all(a.result.error_kind == ErrorKind.PLANNER_FAILURE.value for a in history)

    def test_planner_exception_is_contained(self, make_controller, file_task, context):
        class RaisingPlanner(StaticPlanner):
            def plan(self, request):
                raise RuntimeError("planner bug")

        outcome = make_controller(RaisingPlanner([])).run(file_task, context)
        assert outcome.success is False
        assert outcome.attempts[0].result.error == "Planner error: planner bug"

    def test_evaluator_exception_is_contained(self, make_controller, file_task, context):
        planner = StaticPlanner([FileWrite("greeting.py", "")])
        outcome = make_controller(planner, engine=ExplodingDecisionEngine()).run(file_task, context)
        assert outcome.state == ReflectionState.EXHAUSTED
        assert outcome.final_confidence == 0.0
        assert "Evaluation failed: evaluator crashed" in outcome.result.error


# =============================================================================
# PERSISTENT FAILURE ESCALATION
# =============================================================================

class TestPersistentFailure:
    """Same error twice -> ask a human before the third plan."""

    def test_user_stops(self, make_controller, file_task, context, workspace):
        escalation = ScriptedEscalationPort(choices=[STOP_EXECUTION])
        planner = StaticPlanner([Command("python", ("greeting.py",))])
        outcome = make_controller(
            planner,
            runner=failing_command_runner(workspace),
            escalation=escalation,
        ).run(file_task, context)

        assert outcome.state == ReflectionState.ABORTED
        assert outcome.iterations_used == 2
        assert outcome.iterations_used < outcome.max_iterations
        assert outcome.result.error.startswith("Persistent failure detected and user chose to stop")
        assert "No module named foo" in outcome.result.error
        assert outcome.result.error_kind == ErrorKind.PERSISTENT_FAILURE.value
        assert file_task.checkbox_state == CheckboxState.FAILED

        message = escalation.messages[0]
        assert "Occurred: 2 times" in message
        assert "Attempt 1:" in message and "Attempt 2:" in message

    def test_skip_task_also_stops(self, make_controller, file_task, context, workspace):
        escalation = ScriptedEscalationPort(choices=[SKIP_TASK])
        outcome = make_controller(
            StaticPlanner([Command("make")]),
            runner=failing_command_runner(workspace),
            escalation=escalation,
        ).run(file_task, context)
        assert outcome.state == ReflectionState.ABORTED
        assert outcome.iterations_used == 2

    def test_guidance_reaches_next_plan(self, make_controller, file_task, context, workspace):
        escalation = ScriptedEscalationPort(
            choices=[PROVIDE_GUIDANCE],
            texts=["Install foo first with pip"],
        )
        planner = RecordingPlanner([PlannerResult(success=True, actions=[Command("python", ("x.py",))])])
        outcome = make_controller(
            planner,
            runner=failing_command_runner(workspace),
            escalation=escalation,
        ).run(file_task, context)

        assert outcome.state == ReflectionState.EXHAUSTED
        assert outcome.iterations_used == 3
        assert [r.failure_context.user_guidance for r in planner.requests] == [
            None, None, "Install foo first with pip",
        ]

    def test_dismissed_guidance_stops(self, make_controller, file_task, context, workspace):
        escalation = ScriptedEscalationPort(choices=[PROVIDE_GUIDANCE], texts=[None])
        outcome = make_controller(
            StaticPlanner([Command("make")]),
            runner=failing_command_runner(workspace),
            escalation=escalation,
        ).run(file_task, context)
        assert outcome.state == ReflectionState.ABORTED

    def test_initial_guidance_is_passed_through(self, make_controller, file_task, context):
        planner = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("greeting.py", "")])])
        make_controller(planner).run(file_task, context, user_guidance="keep it short")
        assert planner.requests[0].failure_context.user_guidance == "keep it short"

    def test_no_pause_when_disabled(self, make_controller, file_task, context, workspace):
        escalation = ScriptedEscalationPort(choices=[STOP_EXECUTION])
        outcome = make_controller(
            StaticPlanner([Command("make")]),
            runner=failing_command_runner(workspace),
            escalation=escalation,
            config=ReflectionConfig(pause_on_persistent_failure=False),
        ).run(file_task, context)
        assert outcome.state == ReflectionState.EXHAUSTED
        assert escalation.messages == []


# =============================================================================
# CANCELLATION AND MODES
# =============================================================================

class BlockingEscalationPort(HumanEscalationPort):
    """Cancels the run, then waits for an answer that never comes in time."""

    def __init__(self, cancel_event):
        self.cancel_event = cancel_event
        self.release = threading.Event()

    def prompt_choice(self, message, options):
        self.cancel_event.set()
        self.release.wait(timeout=5)
        return STOP_EXECUTION

    def prompt_free_text(self, prompt):
        return None


class TestCancellation:
    def test_cancel_before_start(self, make_controller, file_task, context, ledger):
        cancel_event = threading.Event()
        cancel_event.set()
        planner = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("a.py", "")])])
        outcome = make_controller(planner, cancel_event=cancel_event).run(file_task, context)

        assert outcome.state == ReflectionState.ABORTED
        assert outcome.iterations_used == 0
        assert outcome.result.error.startswith("Reflection aborted")
        assert outcome.result.error_kind == ErrorKind.ABORTED.value
        assert planner.requests == []
        assert ledger.get_failure_history("s1", "task-1") == []

    def test_cancel_while_waiting_for_human(self, make_controller, file_task, context, workspace):
        cancel_event = threading.Event()
        escalation = BlockingEscalationPort(cancel_event)
        try:
            outcome = make_controller(
                StaticPlanner([Command("make")]),
                runner=failing_command_runner(workspace),
                escalation=escalation,
                cancel_event=cancel_event,
            ).run(file_task, context)
        finally:
            escalation.release.set()

        assert outcome.state == ReflectionState.ABORTED
        assert outcome.iterations_used == 2
        assert "waiting for human input" in outcome.result.error


class TestModes:
    def test_disabled_reflection_runs_once(self, make_controller, file_task, context, ledger):
        planner = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("x.py", "")])])
        outcome = make_controller(planner, config=ReflectionConfig(enabled=False)).run(file_task, context)

        assert outcome.success is True
        assert outcome.iterations_used == 1
        assert len(planner.requests) == 1
        assert ledger.get_failure_history("s1", "task-1") == []

    def test_rerun_starts_with_a_clean_history(self, make_controller, file_task, context, ledger, workspace):
        make_controller(
            StaticPlanner([Command("make")]),
            runner=failing_command_runner(workspace),
            config=ReflectionConfig(max_iterations=2),
        ).run(file_task, context)

        escalation = ScriptedEscalationPort(choices=[STOP_EXECUTION])
        recording = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("greeting.py", "")])])
        outcome = make_controller(recording, escalation=escalation).run(file_task, context)

        assert outcome.success
        assert escalation.messages == []
        first = recording.requests[0].failure_context
        assert first.previous_attempts == []
        assert first.failure_patterns == []
        assert [a.iteration for a in ledger.get_failure_history("s1", "task-1")] == [1, 2, 3]

    def test_context_window_notes(self, make_controller, file_task, context, state_dir):
        window = ContextWindow(state_dir, "s1")
        planner = StaticPlanner([FileWrite("greeting.py", "")])
        make_controller(planner, context_window=window).run(file_task, context)
        roles = [e.role for e in window.entries]
        assert roles == ["assistant", "tool"]
        assert "file-write: greeting.py" in window.entries[1].content


# =============================================================================
# EVENTS
# =============================================================================

class TestEvents:
    def test_lifecycle_events(self, make_controller, file_task, context, recorder):
        planner = RecordingPlanner([PlannerResult(success=True, actions=[FileWrite("a.py", "")])])
        make_controller(planner, engine=SequenceDecisionEngine([0.2, 0.9])).run(file_task, context)

        started = recorder.of_type(REFLECTION_STARTED)
        iterations = recorder.of_type(REFLECTION_ITERATION)
        completed = recorder.of_type(REFLECTION_COMPLETED)

        assert len(started) == 1
        assert started[0].data["max_iterations"] == 3
        assert [e.data["iteration"] for e in iterations] == [1, 2]
        assert [e.data["confidence"] for e in iterations] == [0.2, 0.9]
        assert completed[0].data["success"] is True
        assert completed[0].data["iterations_used"] == 2
        assert completed[0].data["final_confidence"] == 0.9
        assert all(e.session_id == "s1" for e in recorder.events)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
