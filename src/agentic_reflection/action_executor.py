"""Sequential plan execution with retry, approval and quota policies.

Actions run strictly in order and the plan stops at the first failure.
Command failures are classified: transient ones are retried here with
exponential backoff, strategic ones are reported straight back so the
reflection loop can re-plan.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from agentic_reflection.action_runner import ActionOutcome, ActionRunner
from agentic_reflection.config import ExecutorConfig, RetryConfig
from agentic_reflection.errors import (
    ApprovalDeniedError,
    ErrorKind,
    QuotaExceededError,
    ReflectionError,
    backoff_delay_ms,
    classify_failure,
)
from agentic_reflection.escalation import ApprovalPort, ApprovalRequest, AutoApprovalPort
from agentic_reflection.events import APPROVAL_REQUIRED, EventBus
from agentic_reflection.models import (
    Command,
    ExecutionAction,
    ExecutionResult,
    FileDelete,
    FileWrite,
    describe_action,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    task_id: str
    actions: List[ExecutionAction] = field(default_factory=list)


@dataclass
class CommandOutcome:
    """Final result of a command after the retry policy has run."""
    success: bool
    error: Optional[str] = None
    attempts: int = 1
    kind: Optional[ErrorKind] = None  # TRANSIENT once retries ran out, else STRATEGIC
    output: Optional[str] = None


def _outcome_error(outcome: ActionOutcome) -> str:
    if outcome.error and outcome.error.strip():
        return outcome.error.strip()
    if outcome.exit_code is not None:
        return f"exit code {outcome.exit_code}"
    return "unknown error"


class ActionExecutor:
    """
    Runs plans for one task run.

    The modification counter belongs to this instance; build one executor
    per reflection controller so quotas never leak between tasks.
    """

    def __init__(
        self,
        runner: ActionRunner,
        workspace_root: Path,
        config: Optional[ExecutorConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        approval_port: Optional[ApprovalPort] = None,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            runner: Performs one action against the workspace
            workspace_root: Directory relative targets resolve against
            config: Approval and quota policy (default: ExecutorConfig())
            retry_config: Backoff policy for transient command failures
            approval_port: Asked before destructive actions (default: deny all)
            events: Bus for approval events
            sleep: Injected for tests; receives seconds
        """
        self.runner = runner
        self.workspace_root = Path(workspace_root)
        self.config = config or ExecutorConfig()
        self.retry_config = retry_config or RetryConfig()
        self.approval_port = approval_port or AutoApprovalPort(approve=False)
        self.events = events or EventBus()
        self.sleep = sleep
        self._modification_count = 0

    @property
    def modification_count(self) -> int:
        return self._modification_count

    def reset_modification_count(self) -> None:
        self._modification_count = 0

    def _exists(self, target: str) -> bool:
        path = Path(target)
        if not path.is_absolute():
            path = self.workspace_root / path
        return path.exists()

    def _check_policies(self, action: ExecutionAction, task_id: str, session_id: str) -> None:
        """Raise if the action is denied or would exceed the modification quota."""
        if action.destructive and self.config.require_destructive_approval:
            self.events.emit(APPROVAL_REQUIRED, session_id, {
                "task_id": task_id,
                "operation": action.kind,
                "description": describe_action(action),
            })
            approval = self.approval_port.request_approval(ApprovalRequest(
                session_id=session_id,
                task_id=task_id,
                operation=action.kind,
                description=describe_action(action),
                files=[action.target] if action.target else None,
            ))
            if not approval.approved:
                raise ApprovalDeniedError(f"Operation rejected: {approval.reason or 'User denied'}")

        if isinstance(action, (FileWrite, FileDelete)):
            if self._modification_count >= self.config.max_file_modifications:
                raise QuotaExceededError(
                    f"File modification limit reached ({self.config.max_file_modifications})"
                )

    def run(self, plan: ExecutionPlan, session_id: str) -> ExecutionResult:
        """
        Execute every action in order, stopping at the first failure.

        Args:
            plan: Task id and the actions to run
            session_id: Session the approval requests and events belong to

        Returns:
            ExecutionResult carrying the files and commands touched so far,
            including on failure. A failed result names its ``error_kind``.
        """
        start = time.monotonic()
        result = ExecutionResult(success=True, task_id=plan.task_id)

        def fail(error: str, kind: ErrorKind) -> ExecutionResult:
            result.success = False
            result.error = error
            result.error_kind = kind.value
            result.duration_ms = (time.monotonic() - start) * 1000
            logger.info("Plan for %s failed (%s): %s", plan.task_id, kind.value, error)
            return result

        logger.info("Executing plan for task %s with %d actions", plan.task_id, len(plan.actions))

        for action in plan.actions:
            try:
                self._check_policies(action, plan.task_id, session_id)
            except ReflectionError as e:
                return fail(str(e), e.kind)

            existed_before = isinstance(action, FileWrite) and self._exists(action.target)

            if isinstance(action, Command):
                outcome = self.run_command(action)
                result.commands_run.append(action.command_line)
                if outcome.output is not None:
                    result.command_outputs[action.command_line] = outcome.output
                if not outcome.success:
                    return fail(outcome.error or "Command failed", outcome.kind or ErrorKind.STRATEGIC)
                if outcome.attempts > 1:
                    logger.info(
                        "Command %s succeeded after %d attempts",
                        action.command_line, outcome.attempts,
                    )
                continue

            try:
                action_outcome = self.runner(action)
            except Exception as e:
                logger.exception("Runner raised for %s", describe_action(action))
                return fail(str(e), ErrorKind.STRATEGIC)
            if not action_outcome.success:
                return fail(_outcome_error(action_outcome), ErrorKind.STRATEGIC)

            if isinstance(action, FileWrite):
                if existed_before:
                    result.files_modified.append(action.target)
                else:
                    result.files_created.append(action.target)
            if isinstance(action, (FileWrite, FileDelete)):
                self._modification_count += 1

        result.duration_ms = (time.monotonic() - start) * 1000
        return result

    def run_command(self, action: Command) -> CommandOutcome:
        """
        Run a command, retrying transient failures with backoff.

        Args:
            action: The command to run

        Returns:
            CommandOutcome with the number of attempts made. On failure,
            ``kind`` is STRATEGIC when the first non-transient error stopped
            the retries and TRANSIENT when every retry was used up.
        """
        retry = self.retry_config
        last_error = "unknown error"
        last_output: Optional[str] = None

        for attempt in range(retry.max_retries + 1):
            if attempt > 0:
                delay_ms = backoff_delay_ms(
                    attempt,
                    retry.initial_delay_ms,
                    retry.backoff_multiplier,
                    retry.max_delay_ms,
                    jitter=retry.jitter,
                )
                logger.info(
                    "Retrying command (attempt %d/%d) after %.0fms",
                    attempt + 1, retry.max_retries + 1, delay_ms,
                )
                self.sleep(delay_ms / 1000)

            try:
                outcome = self.runner(action)
            except Exception as e:
                outcome = ActionOutcome(success=False, error=str(e))

            last_output = outcome.output
            if outcome.success:
                return CommandOutcome(success=True, attempts=attempt + 1, output=outcome.output)

            last_error = _outcome_error(outcome)
            kind = classify_failure(outcome.exit_code, outcome.error, retry.transient_exit_codes)
            if kind == ErrorKind.STRATEGIC:
                logger.info(
                    "Strategic error (exit code %s) for %s, not retrying",
                    outcome.exit_code, action.command_line,
                )
                return CommandOutcome(
                    success=False,
                    error=f"Command failed with strategic error: {last_error}",
                    attempts=attempt + 1,
                    kind=ErrorKind.STRATEGIC,
                    output=last_output,
                )
            logger.info("Transient error (exit code %s), will retry", outcome.exit_code)

        logger.warning("Command failed after %d attempts: %s", retry.max_retries + 1, action.command_line)
        return CommandOutcome(
            success=False,
            error=f"Command failed after {retry.max_retries + 1} attempts: {last_error}",
            attempts=retry.max_retries + 1,
            kind=ErrorKind.TRANSIENT,
            output=last_output,
        )
