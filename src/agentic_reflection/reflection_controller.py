"""Reflection loop: plan -> execute -> evaluate -> record, until done.

One controller drives one task run. Iterations are strictly sequential.
Before each re-plan the attempt history is scanned for persistent failures;
when one is found the loop pauses and asks a human for guidance, or stops.
Whatever happens, the caller gets an ``ExecutionResult``; exceptions never
escape ``run``.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from agentic_reflection.action_executor import ActionExecutor, ExecutionPlan
from agentic_reflection.config import ReflectionConfig, validate_reflection_config
from agentic_reflection.context_window import ContextWindow
from agentic_reflection.decision_engine import DecisionEngine
from agentic_reflection.errors import ErrorKind
from agentic_reflection.escalation import (
    ESCALATION_OPTIONS,
    PROVIDE_GUIDANCE,
    HumanEscalationPort,
)
from agentic_reflection.events import (
    REFLECTION_COMPLETED,
    REFLECTION_ITERATION,
    REFLECTION_STARTED,
    EventBus,
)
from agentic_reflection.failure_ledger import (
    FailureLedger,
    compute_failure_patterns,
    persistent_patterns,
)
from agentic_reflection.models import (
    AttemptRecord,
    CheckboxState,
    DetailedEvaluation,
    EnvironmentState,
    ExecutionAction,
    ExecutionResult,
    FailureContext,
    FailurePattern,
    LastDecision,
    PlanRequest,
    RunContext,
    Task,
    describe_action,
    utc_now_iso,
)
from agentic_reflection.planner import Planner, planner_error

logger = logging.getLogger(__name__)

CANCEL_POLL_S = 0.1


class ReflectionState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    CONTINUE = "continue"
    ESCALATING = "escalating"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


@dataclass
class ReflectionOutcome:
    result: ExecutionResult
    state: ReflectionState
    iterations_used: int
    max_iterations: int
    final_confidence: Optional[float] = None
    reason: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result.success


@dataclass
class RunState:
    """Mutable bookkeeping for one task run."""
    task: Task
    context: RunContext
    started_at: float
    attempts: List[AttemptRecord] = field(default_factory=list)
    environment: EnvironmentState = field(default_factory=EnvironmentState)
    user_guidance: Optional[str] = None
    iteration: int = 0  # current iteration within this run, 1-based once started
    iteration_offset: int = 0  # attempts already in the ledger before this run
    state: ReflectionState = ReflectionState.PLANNING
    actions: List[ExecutionAction] = field(default_factory=list)
    last_result: Optional[ExecutionResult] = None
    last_evaluation: Optional[DetailedEvaluation] = None
    outcome: Optional[ReflectionOutcome] = None

    @property
    def absolute_iteration(self) -> int:
        return self.iteration_offset + self.iteration

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class ReflectionController:
    """Top-level loop for one task."""

    def __init__(
        self,
        planner: Planner,
        executor: ActionExecutor,
        decision_engine: DecisionEngine,
        ledger: FailureLedger,
        config: Optional[ReflectionConfig] = None,
        escalation: Optional[HumanEscalationPort] = None,
        events: Optional[EventBus] = None,
        context_window: Optional[ContextWindow] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.planner = planner
        self.executor = executor
        self.decision_engine = decision_engine
        self.ledger = ledger
        self.config = validate_reflection_config(config or ReflectionConfig())
        self.escalation = escalation
        self.events = events or EventBus()
        self.context_window = context_window
        self.cancel_event = cancel_event or threading.Event()

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def run(
        self,
        task: Task,
        context: RunContext,
        user_guidance: Optional[str] = None,
    ) -> ReflectionOutcome:
        """Drive ``task`` until it succeeds, exhausts its budget, or is stopped."""
        try:
            if not self.config.enabled:
                return self._run_once(task, context)

            run = self.start(task, context, user_guidance)
            while run.outcome is None:
                self.begin_iteration(run)
                if run.outcome is not None:
                    break
                self.check_persistent_failure(run)
                if run.outcome is not None:
                    break
                self.plan_and_execute(run)
                self.evaluate(run)
                self.record(run)
            return run.outcome
        except Exception as e:
            logger.exception("Reflection loop crashed for task %s", task.id)
            task.checkbox_state = CheckboxState.FAILED
            task.error = f"Reflection loop error: {e}"
            return ReflectionOutcome(
                result=ExecutionResult(
                    success=False,
                    task_id=task.id,
                    error=task.error,
                    error_kind=ErrorKind.ABORTED.value,
                ),
                state=ReflectionState.ABORTED,
                iterations_used=0,
                max_iterations=self.config.max_iterations,
                reason="internal error",
            )

    def cancel(self) -> None:
        """Ask the loop to stop at the next iteration boundary or escalation wait."""
        self.cancel_event.set()

    # =========================================================================
    # PHASES (also used by the LangGraph harness)
    # =========================================================================

    def start(
        self,
        task: Task,
        context: RunContext,
        user_guidance: Optional[str] = None,
    ) -> RunState:
        prior = self.ledger.get_failure_history(context.session_id, task.id)
        run = RunState(
            task=task,
            context=context,
            started_at=time.monotonic(),
            user_guidance=user_guidance,
            iteration_offset=len(prior),
        )
        if prior:
            logger.info(
                "Task %s already has %d attempts in the ledger, numbering from %d",
                task.id, len(prior), len(prior) + 1,
            )

        task.checkbox_state = CheckboxState.IN_PROGRESS
        logger.info(
            "Starting reflection loop for task %s (max %d iterations)",
            task.id, self.config.max_iterations,
        )
        self.events.emit(REFLECTION_STARTED, context.session_id, {
            "task_id": task.id,
            "max_iterations": self.config.max_iterations,
            "confidence_threshold": self.config.confidence_threshold,
        })
        return run

    def begin_iteration(self, run: RunState) -> None:
        run.iteration += 1
        run.state = ReflectionState.PLANNING
        run.actions = []
        if self.cancel_event.is_set():
            self._finish_aborted(run, "Cancelled before iteration start")
            return
        logger.info(
            "Reflection iteration %d/%d for task %s",
            run.iteration, self.config.max_iterations, run.task.id,
        )

    def check_persistent_failure(self, run: RunState) -> None:
        """Escalate to a human if any error from this run recurs at or above the threshold."""
        if run.iteration <= 1 or not run.attempts:
            return
        if not self.config.pause_on_persistent_failure:
            return
        if not self.config.enable_pattern_detection:
            return

        patterns = compute_failure_patterns(run.attempts)
        persistent = persistent_patterns(patterns, self.config.persistent_failure_threshold)
        if not persistent:
            return

        pattern = max(persistent, key=lambda p: p.occurrences)
        logger.warning(
            'Persistent failure detected: "%s" occurred %d times',
            pattern.error_message, pattern.occurrences,
        )
        if self.escalation is None:
            logger.warning("No escalation port configured, continuing without human input")
            return

        run.state = ReflectionState.ESCALATING
        guidance = self._request_guidance(run, pattern)
        if run.outcome is not None:
            return
        if guidance:
            logger.info("User provided guidance: %s", guidance)
            run.user_guidance = guidance
            run.state = ReflectionState.PLANNING
            return

        logger.info("User chose not to provide guidance, stopping reflection loop")
        self._finish(
            run,
            state=ReflectionState.ABORTED,
            error=f"Persistent failure detected and user chose to stop: {pattern.error_message}",
            kind=ErrorKind.PERSISTENT_FAILURE,
            iterations_used=run.iteration - 1,
            reason="User chose to stop after persistent failure",
        )

    def build_failure_context(self, run: RunState) -> FailureContext:
        return FailureContext(
            iteration=run.absolute_iteration,
            previous_attempts=list(run.attempts),
            failure_patterns=compute_failure_patterns(run.attempts) if run.attempts else [],
            environment_state=run.environment.snapshot(),
            user_guidance=run.user_guidance,
        )

    def plan_and_execute(self, run: RunState) -> None:
        run.state = ReflectionState.PLANNING
        request = PlanRequest(
            task=run.task,
            context=run.context,
            failure_context=self.build_failure_context(run),
        )

        try:
            plan_result = self.planner.plan(request)
            error = planner_error(plan_result)
        except Exception as e:
            logger.exception("Planner raised for task %s", run.task.id)
            plan_result, error = None, f"Planner error: {e}"

        if error is not None:
            run.last_result = ExecutionResult(
                success=False,
                task_id=run.task.id,
                error=error,
                error_kind=ErrorKind.PLANNER_FAILURE.value,
            )
            self._note("tool", f"Planning failed: {error}", run)
            return

        run.actions = list(plan_result.actions)
        if plan_result.reasoning:
            self._note("assistant", plan_result.reasoning, run)

        run.state = ReflectionState.EXECUTING
        result = self.executor.run(
            ExecutionPlan(task_id=run.task.id, actions=run.actions),
            run.context.session_id,
        )
        run.last_result = result
        run.environment.merge(result)
        self._note("tool", _describe_result(run.actions, result), run)

    def evaluate(self, run: RunState) -> None:
        run.state = ReflectionState.EVALUATING
        try:
            evaluation = self.decision_engine.evaluate(run.task, run.last_result)
        except Exception as e:
            logger.exception("Evaluation raised for task %s", run.task.id)
            evaluation = DetailedEvaluation(
                confidence=0.0,
                reasoning=f"Evaluation failed: {e}",
                detected=False,
            )
        run.last_evaluation = evaluation
        run.task.last_decision = LastDecision(
            confidence=evaluation.confidence,
            reason=evaluation.reasoning,
            timestamp=utc_now_iso(),
        )

    def record(self, run: RunState) -> None:
        """Append the attempt, then decide: succeed, exhaust, or continue."""
        result, evaluation = run.last_result, run.last_evaluation
        attempt = AttemptRecord(
            iteration=run.absolute_iteration,
            timestamp=utc_now_iso(),
            actions=tuple(run.actions),
            result=result,
            evaluation_reason=evaluation.reasoning,
            confidence=evaluation.confidence,
        )
        self.ledger.track_attempt(run.context.session_id, run.task.id, attempt)
        run.attempts.append(attempt)

        logger.info(
            "Iteration %d result: %s, evaluation confidence: %.2f",
            run.iteration, "success" if result.success else "failed", evaluation.confidence,
        )
        self.events.emit(REFLECTION_ITERATION, run.context.session_id, {
            "task_id": run.task.id,
            "iteration": run.iteration,
            "max_iterations": self.config.max_iterations,
            "success": result.success,
            "confidence": evaluation.confidence,
            "reasoning": evaluation.reasoning,
        })

        if evaluation.detected and evaluation.confidence >= self.config.confidence_threshold:
            logger.info(
                "Task %s completed after %d iteration(s) with confidence %.2f",
                run.task.id, run.iteration, evaluation.confidence,
            )
            run.state = ReflectionState.SUCCEEDED
            run.task.checkbox_state = CheckboxState.COMPLETE
            run.task.retry_count = run.iteration - 1
            run.task.error = None
            final = replace(result, success=True, duration_ms=run.elapsed_ms())
            self.events.emit(REFLECTION_COMPLETED, run.context.session_id, {
                "task_id": run.task.id,
                "success": True,
                "iterations_used": run.iteration,
                "max_iterations": self.config.max_iterations,
                "final_confidence": evaluation.confidence,
            })
            run.outcome = ReflectionOutcome(
                result=final,
                state=run.state,
                iterations_used=run.iteration,
                max_iterations=self.config.max_iterations,
                final_confidence=evaluation.confidence,
                attempts=list(run.attempts),
            )
            return

        if run.iteration >= self.config.max_iterations:
            logger.warning(
                "Task %s exhausted %d iterations without reaching the confidence threshold",
                run.task.id, self.config.max_iterations,
            )
            self._finish(
                run,
                state=ReflectionState.EXHAUSTED,
                kind=ErrorKind.EXHAUSTED,
                error=(
                    f"Reflection loop exhausted after {self.config.max_iterations} iterations. "
                    f"Last evaluation: {evaluation.reasoning}"
                ),
                iterations_used=run.iteration,
                reason="Max iterations exhausted",
            )
            return

        logger.info(
            "Task %s not complete (confidence %.2f < %.2f), re-planning",
            run.task.id, evaluation.confidence, self.config.confidence_threshold,
        )
        run.state = ReflectionState.CONTINUE

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _run_once(self, task: Task, context: RunContext) -> ReflectionOutcome:
        """Reflection disabled: plan and execute a single time, no evaluation."""
        logger.info("Reflection disabled, executing task %s once", task.id)
        run = RunState(task=task, context=context, started_at=time.monotonic(), iteration=1)
        task.checkbox_state = CheckboxState.IN_PROGRESS
        self.plan_and_execute(run)
        result = run.last_result
        task.checkbox_state = CheckboxState.COMPLETE if result.success else CheckboxState.FAILED
        task.error = result.error
        return ReflectionOutcome(
            result=result,
            state=ReflectionState.SUCCEEDED if result.success else ReflectionState.EXHAUSTED,
            iterations_used=1,
            max_iterations=1,
        )

    def _request_guidance(self, run: RunState, pattern: FailurePattern) -> Optional[str]:
        approaches = "\n".join(
            f"Attempt {a.iteration}: {a.result.error or 'Unknown error'}" for a in run.attempts
        )
        message = (
            "Task execution is stuck in a failure loop.\n\n"
            f"Task: {run.task.title}\n"
            f"Error: {pattern.error_message}\n"
            f"Occurred: {pattern.occurrences} times\n\n"
            f"Attempted approaches:\n{approaches}\n\n"
            "Would you like to provide guidance for the next attempt?"
        )

        choice = self._wait_for_human(run, self.escalation.prompt_choice, message, ESCALATION_OPTIONS)
        if run.outcome is not None or choice != PROVIDE_GUIDANCE:
            return None
        return self._wait_for_human(
            run,
            self.escalation.prompt_free_text,
            "Provide guidance for the next execution attempt",
        )

    def _wait_for_human(self, run: RunState, prompt, *args):
        """
        Block on a human prompt with no timeout of its own.

        The prompt runs on a worker thread so that a cancel request can end
        the wait; the abandoned prompt is left to finish on its own.
        """
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="escalation")
        try:
            future = pool.submit(prompt, *args)
            while True:
                done, _ = wait([future], timeout=CANCEL_POLL_S)
                if done:
                    return future.result()
                if self.cancel_event.is_set():
                    self._finish_aborted(run, "Cancelled while waiting for human input")
                    return None
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _finish_aborted(self, run: RunState, reason: str) -> None:
        logger.info("Task %s aborted: %s", run.task.id, reason)
        self._finish(
            run,
            state=ReflectionState.ABORTED,
            error=f"Reflection aborted: {reason}",
            kind=ErrorKind.ABORTED,
            iterations_used=run.iteration - 1,
            reason=reason,
        )

    def _finish(
        self,
        run: RunState,
        state: ReflectionState,
        error: str,
        kind: ErrorKind,
        iterations_used: int,
        reason: str,
    ) -> None:
        last = run.last_result
        final_confidence = run.attempts[-1].confidence if run.attempts else None
        run.state = state
        run.task.checkbox_state = CheckboxState.FAILED
        run.task.retry_count = max(iterations_used - 1, 0)
        run.task.error = error

        self.events.emit(REFLECTION_COMPLETED, run.context.session_id, {
            "task_id": run.task.id,
            "success": False,
            "iterations_used": iterations_used,
            "max_iterations": self.config.max_iterations,
            "final_confidence": final_confidence,
            "reason": reason,
        })
        run.outcome = ReflectionOutcome(
            result=ExecutionResult(
                success=False,
                task_id=run.task.id,
                error=error,
                error_kind=kind.value,
                files_created=list(last.files_created) if last else [],
                files_modified=list(last.files_modified) if last else [],
                commands_run=list(last.commands_run) if last else [],
                duration_ms=run.elapsed_ms(),
            ),
            state=state,
            iterations_used=iterations_used,
            max_iterations=self.config.max_iterations,
            final_confidence=final_confidence,
            reason=reason,
            attempts=list(run.attempts),
        )

    def _note(self, role: str, content: str, run: RunState) -> None:
        if self.context_window is None:
            return
        self.context_window.add_entry(
            role,
            content,
            metadata={"task_id": run.task.id, "iteration": run.absolute_iteration},
        )


def _describe_result(actions: List[ExecutionAction], result: ExecutionResult) -> str:
    lines = [f"Executed {len(actions)} action(s): {'success' if result.success else 'failed'}"]
    lines += [f"- {describe_action(a)}" for a in actions]
    if result.error:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)
