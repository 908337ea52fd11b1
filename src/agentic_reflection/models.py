"""Data model for the reflection loop.

Tasks, success criteria, plan actions, execution results and the attempt
records that make up the failure ledger. Everything that is persisted has a
``to_dict`` / ``from_dict`` pair that round-trips every field exactly.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from typing_extensions import assert_never


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# TASKS AND CRITERIA
# =============================================================================

class CheckboxState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class CriterionKind(str, Enum):
    FILE_EXISTS = "file-exists"
    COMMAND_RUNS = "command-runs"
    BUILD_PASSES = "build-passes"
    TEST_PASSES = "test-passes"
    LINT_PASSES = "lint-passes"
    CUSTOM = "custom"

    @property
    def is_command(self) -> bool:
        return self in COMMAND_CRITERIA


COMMAND_CRITERIA = frozenset({
    CriterionKind.COMMAND_RUNS,
    CriterionKind.BUILD_PASSES,
    CriterionKind.TEST_PASSES,
    CriterionKind.LINT_PASSES,
})


@dataclass(frozen=True)
class SuccessCriterion:
    """A single check that must hold for a task to be done."""
    kind: CriterionKind
    description: str
    validation: str  # comma-separated paths, or a shell command

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "validation": self.validation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SuccessCriterion":
        return cls(
            kind=CriterionKind(data.get("kind") or data["type"]),
            description=data.get("description", ""),
            validation=data.get("validation", ""),
        )


@dataclass
class LastDecision:
    confidence: float
    reason: str
    timestamp: str


@dataclass
class Task:
    """A unit of work driven by the reflection loop.

    Only the reflection controller mutates ``checkbox_state``,
    ``retry_count`` and ``last_decision``.
    """
    id: str
    title: str
    description: str = ""
    checkbox_state: CheckboxState = CheckboxState.PENDING
    success_criteria: List[SuccessCriterion] = field(default_factory=list)
    retry_count: int = 0
    last_decision: Optional[LastDecision] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "checkbox_state": self.checkbox_state.value,
            "success_criteria": [c.to_dict() for c in self.success_criteria],
            "retry_count": self.retry_count,
            "last_decision": (
                {
                    "confidence": self.last_decision.confidence,
                    "reason": self.last_decision.reason,
                    "timestamp": self.last_decision.timestamp,
                }
                if self.last_decision else None
            ),
            "error": self.error,
        }


# =============================================================================
# ACTIONS (closed union)
# =============================================================================

@dataclass(frozen=True)
class FileWrite:
    target: str
    content: str
    destructive: bool = False

    kind = "file-write"


@dataclass(frozen=True)
class FileDelete:
    target: str
    destructive: bool = True

    kind = "file-delete"


@dataclass(frozen=True)
class Command:
    target: str
    args: tuple = ()
    destructive: bool = False

    kind = "command"

    @property
    def command_line(self) -> str:
        if self.args:
            return " ".join([self.target, *self.args])
        return self.target


@dataclass(frozen=True)
class LLMGenerate:
    target: str
    destructive: bool = False

    kind = "llm-generate"


ExecutionAction = Union[FileWrite, FileDelete, Command, LLMGenerate]

ACTION_KINDS = ("file-write", "file-delete", "command", "llm-generate")


def action_to_dict(action: ExecutionAction) -> dict:
    """Serialize an action to its tagged-dict form."""
    if isinstance(action, FileWrite):
        return {"type": action.kind, "target": action.target,
                "content": action.content, "destructive": action.destructive}
    if isinstance(action, FileDelete):
        return {"type": action.kind, "target": action.target,
                "destructive": action.destructive}
    if isinstance(action, Command):
        return {"type": action.kind, "target": action.target,
                "args": list(action.args), "destructive": action.destructive}
    if isinstance(action, LLMGenerate):
        return {"type": action.kind, "target": action.target,
                "destructive": action.destructive}
    assert_never(action)


def action_from_dict(data: dict) -> ExecutionAction:
    """Build an action from its tagged-dict form.

    Raises:
        ValueError: If the ``type`` tag is not a known action kind.
    """
    kind = data.get("type")
    target = data.get("target") or data.get("path") or ""
    if kind == "file-write":
        return FileWrite(
            target=target,
            content=data.get("content", ""),
            destructive=bool(data.get("destructive", False)),
        )
    if kind == "file-delete":
        return FileDelete(target=target, destructive=bool(data.get("destructive", True)))
    if kind == "command":
        return Command(
            target=data.get("command") or target,
            args=tuple(data.get("args") or ()),
            destructive=bool(data.get("destructive", False)),
        )
    if kind == "llm-generate":
        return LLMGenerate(target=target, destructive=bool(data.get("destructive", False)))
    raise ValueError(f"Unknown action type: {kind}")


def describe_action(action: ExecutionAction) -> str:
    if isinstance(action, Command):
        return f"{action.kind}: {action.command_line}"
    return f"{action.kind}: {action.target}"


# =============================================================================
# RESULTS, ATTEMPTS, PATTERNS
# =============================================================================

@dataclass
class ExecutionResult:
    """Outcome of one plan execution (one per iteration)."""
    success: bool
    task_id: str
    files_created: List[str] = field(default_factory=list)
    files_modified: List[str] = field(default_factory=list)
    commands_run: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0
    command_outputs: Dict[str, str] = field(default_factory=dict)
    error_kind: Optional[str] = None  # an ErrorKind value when success is False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "commands_run": list(self.commands_run),
            "error": self.error,
            "duration_ms": self.duration_ms,
            "command_outputs": dict(self.command_outputs),
            "error_kind": self.error_kind,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionResult":
        return cls(
            success=data["success"],
            task_id=data["task_id"],
            files_created=list(data.get("files_created", [])),
            files_modified=list(data.get("files_modified", [])),
            commands_run=list(data.get("commands_run", [])),
            error=data.get("error"),
            duration_ms=data.get("duration_ms", 0.0),
            command_outputs=dict(data.get("command_outputs", {})),
            error_kind=data.get("error_kind"),
        )


@dataclass(frozen=True)
class AttemptRecord:
    """One iteration of the loop, as written to the ledger. Never mutated."""
    iteration: int
    timestamp: str
    actions: tuple
    result: ExecutionResult
    evaluation_reason: str
    confidence: float

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "timestamp": self.timestamp,
            "actions": [action_to_dict(a) for a in self.actions],
            "result": self.result.to_dict(),
            "evaluation_reason": self.evaluation_reason,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttemptRecord":
        return cls(
            iteration=data["iteration"],
            timestamp=data["timestamp"],
            actions=tuple(action_from_dict(a) for a in data.get("actions", [])),
            result=ExecutionResult.from_dict(data["result"]),
            evaluation_reason=data.get("evaluation_reason", ""),
            confidence=data.get("confidence", 0.0),
        )


@dataclass(frozen=True)
class FailurePattern:
    error_message: str
    occurrences: int
    first_seen: str
    last_seen: str

    def is_persistent(self, threshold: int) -> bool:
        return self.occurrences >= threshold

    def to_dict(self) -> dict:
        return {
            "error_message": self.error_message,
            "occurrences": self.occurrences,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }


@dataclass
class EnvironmentState:
    """Cumulative side effects of a task run. Grows monotonically."""
    files_created: List[str] = field(default_factory=list)
    files_modified: List[str] = field(default_factory=list)
    command_outputs: Dict[str, str] = field(default_factory=dict)

    def merge(self, result: ExecutionResult) -> None:
        for path in result.files_created:
            if path not in self.files_created:
                self.files_created.append(path)
        for path in result.files_modified:
            if path not in self.files_modified:
                self.files_modified.append(path)
        self.command_outputs.update(result.command_outputs)

    def snapshot(self) -> "EnvironmentState":
        return EnvironmentState(
            files_created=list(self.files_created),
            files_modified=list(self.files_modified),
            command_outputs=dict(self.command_outputs),
        )


@dataclass
class FailureContext:
    """Everything the planner is told about earlier iterations."""
    iteration: int
    previous_attempts: List[AttemptRecord] = field(default_factory=list)
    failure_patterns: List[FailurePattern] = field(default_factory=list)
    environment_state: EnvironmentState = field(default_factory=EnvironmentState)
    user_guidance: Optional[str] = None


# =============================================================================
# CONTEXT WINDOW
# =============================================================================

@dataclass
class ContextEntry:
    role: str  # "user" | "assistant" | "system" | "tool"
    content: str
    token_estimate: int
    timestamp: str
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_summary(self) -> bool:
        return bool(self.metadata.get("is_summary"))

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "token_estimate": self.token_estimate,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContextEntry":
        return cls(
            role=data["role"],
            content=data["content"],
            token_estimate=data["token_estimate"],
            timestamp=data["timestamp"],
            session_id=data.get("session_id"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class SummaryResult:
    summary_text: str
    original_token_count: int
    summary_token_count: int
    entries_summarized: int
    retained_entries: int


# =============================================================================
# EVALUATION
# =============================================================================

@dataclass
class CriterionResult:
    criterion: SuccessCriterion
    met: bool
    reason: str
    evidence: Optional[str] = None


@dataclass
class DecisionResult:
    confidence: float
    reasoning: str
    detected: bool
    provider: str = "heuristic"


@dataclass
class DetailedEvaluation(DecisionResult):
    criteria_results: List[CriterionResult] = field(default_factory=list)
    missing_elements: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


# =============================================================================
# PLANNER CONTRACT
# =============================================================================

@dataclass
class RunContext:
    spec_path: str
    session_id: str
    phase: int = 4
    previous_tasks: List[Task] = field(default_factory=list)


@dataclass
class PlanRequest:
    task: Task
    context: RunContext
    failure_context: Optional[FailureContext] = None


@dataclass
class PlannerResult:
    success: bool
    actions: List[ExecutionAction] = field(default_factory=list)
    error: Optional[str] = None
    reasoning: Optional[str] = None
