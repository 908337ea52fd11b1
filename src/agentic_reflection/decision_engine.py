"""Decision engine: checks a task's success criteria and scores confidence.

Confidence is the plain ratio of met criteria to total criteria. An
execution result, when given, only contributes evidence strings for display.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from agentic_reflection.models import (
    CriterionKind,
    CriterionResult,
    DecisionResult,
    DetailedEvaluation,
    ExecutionResult,
    SuccessCriterion,
    Task,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.8
DEFAULT_COMMAND_TIMEOUT_S = 30.0

NO_CRITERIA_REASON = "No success criteria defined"


@dataclass
class CheckOutcome:
    met: bool
    reason: str


SUGGESTIONS = {
    CriterionKind.FILE_EXISTS: (
        "Create or verify file: {validation}",
        "Check file path is correct relative to workspace root",
    ),
    CriterionKind.COMMAND_RUNS: (
        "Ensure command can execute: {validation}",
        "Check command dependencies are installed",
    ),
    CriterionKind.BUILD_PASSES: (
        "Fix build errors before proceeding",
        "Review build output for specific issues",
        "Verify all source files are syntactically correct",
    ),
    CriterionKind.TEST_PASSES: (
        "Fix failing tests",
        "Review test output for assertion failures",
        "Ensure test dependencies are available",
    ),
    CriterionKind.LINT_PASSES: (
        "Fix linting errors",
        "Run linter to see specific issues",
        "Update code to match style guidelines",
    ),
    CriterionKind.CUSTOM: (
        "Manually verify custom criterion: {description}",
        "Review task requirements for completion criteria",
    ),
}


class DecisionEngine:
    """Evaluates whether a task's success criteria currently hold."""

    def __init__(
        self,
        workspace_root: Path,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
    ):
        self.workspace_root = Path(workspace_root)
        self.confidence_threshold = confidence_threshold
        self.command_timeout_s = command_timeout_s

    def evaluate(
        self,
        task: Task,
        execution_result: Optional[ExecutionResult] = None,
    ) -> DetailedEvaluation:
        """
        Check every criterion and build a detailed evaluation.

        ``detected`` is exactly ``confidence >= confidence_threshold``.
        Unmet criteria each add one missing element and kind-specific
        suggestions (deduplicated). An error on the execution result is added
        as one more suggestion.
        """
        criteria = task.success_criteria

        if not criteria:
            return DetailedEvaluation(
                confidence=0.0,
                reasoning=NO_CRITERIA_REASON,
                detected=False,
                criteria_results=[],
                missing_elements=[],
                suggestions=[
                    "Define success criteria for the task",
                    "Add file-exists, command-runs, or test-passes criteria",
                ],
            )

        results: List[CriterionResult] = []
        missing: List[str] = []
        for criterion in criteria:
            outcome = self.check_criterion(criterion)
            results.append(CriterionResult(
                criterion=criterion,
                met=outcome.met,
                reason=outcome.reason,
                evidence=_evidence_for(criterion, execution_result),
            ))
            if not outcome.met:
                missing.append(f"{criterion.kind.value}: {criterion.validation}")

        met_count = sum(1 for r in results if r.met)
        confidence = met_count / len(criteria)
        reasoning = "; ".join(
            f"{'✓' if r.met else '✗'} {r.criterion.kind.value}: {r.reason}" for r in results
        )

        evaluation = DetailedEvaluation(
            confidence=confidence,
            reasoning=reasoning,
            detected=confidence >= self.confidence_threshold,
            criteria_results=results,
            missing_elements=missing,
            suggestions=build_suggestions(results, execution_result),
        )
        logger.debug("Evaluated %s: confidence %.2f (%s)", task.id, confidence, reasoning)
        return evaluation

    def evaluate_task(self, task: Task) -> DecisionResult:
        """Confidence and reasoning only, without per-criterion detail."""
        evaluation = self.evaluate(task)
        return DecisionResult(
            confidence=evaluation.confidence,
            reasoning=evaluation.reasoning,
            detected=evaluation.detected,
            provider=evaluation.provider,
        )

    # --- Criterion checks ---

    def check_criterion(self, criterion: SuccessCriterion) -> CheckOutcome:
        if criterion.kind == CriterionKind.FILE_EXISTS:
            return self._check_files_exist(criterion.validation)
        if criterion.kind.is_command:
            return self._check_command_runs(criterion.validation)
        return CheckOutcome(met=False, reason="Custom criterion requires manual validation")

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.workspace_root / candidate

    def _check_files_exist(self, validation: str) -> CheckOutcome:
        paths = [p.strip() for p in validation.split(",") if p.strip()]
        if not paths:
            return CheckOutcome(met=False, reason="No file paths given")

        missing = [p for p in paths if not self._resolve(p).exists()]
        if missing:
            return CheckOutcome(met=False, reason=f"Missing files: {', '.join(missing)}")
        return CheckOutcome(met=True, reason=f"All files exist: {', '.join(paths)}")

    def _check_command_runs(self, command: str) -> CheckOutcome:
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=str(self.workspace_root),
                capture_output=True,
                text=True,
                timeout=self.command_timeout_s,
            )
        except subprocess.TimeoutExpired:
            return CheckOutcome(
                met=False,
                reason=f"Command timed out after {self.command_timeout_s:g}s: {command}",
            )
        except OSError as e:
            return CheckOutcome(met=False, reason=f"Command error: {e}")

        if proc.returncode == 0:
            return CheckOutcome(met=True, reason=f"Command succeeded: {command}")
        stderr = (proc.stderr or "").strip()
        return CheckOutcome(
            met=False,
            reason=f"Command failed (exit {proc.returncode}): {stderr}",
        )


def _evidence_for(
    criterion: SuccessCriterion,
    result: Optional[ExecutionResult],
) -> Optional[str]:
    if result is None:
        return None

    if criterion.kind == CriterionKind.FILE_EXISTS:
        wanted = [p.strip() for p in criterion.validation.split(",") if p.strip()]
        relevant = [
            f for f in result.files_created
            if any(f == w or f.endswith(w) or w.endswith(f) for w in wanted)
        ]
        if relevant:
            return f"Files created: {', '.join(relevant)}"
    elif criterion.kind.is_command:
        relevant = [
            cmd for cmd in result.commands_run
            if cmd in criterion.validation or criterion.validation in cmd
        ]
        if relevant:
            return f"Commands executed: {', '.join(relevant)}"
    return None


def build_suggestions(
    results: Iterable[CriterionResult],
    execution_result: Optional[ExecutionResult] = None,
) -> List[str]:
    suggestions: List[str] = []
    for result in results:
        if result.met:
            continue
        criterion = result.criterion
        for template in SUGGESTIONS[criterion.kind]:
            suggestions.append(template.format(
                validation=criterion.validation,
                description=criterion.description,
            ))

    if execution_result is not None and execution_result.error:
        suggestions.append(f"Address execution error: {execution_result.error}")

    # dict preserves first-seen order
    return list(dict.fromkeys(suggestions))


# =============================================================================
# CRITERIA FROM TASK TEXT
# =============================================================================

FILE_MENTION = re.compile(r"(?:create|add|implement|file)[:\s]+([^\s,`'\"]+\.[A-Za-z0-9]+)", re.IGNORECASE)
BACKTICK_COMMAND = re.compile(r"`([^`]+)`")
FILE_TOKEN = re.compile(r"([A-Za-z0-9_\-./]+\.[A-Za-z0-9]+)")

COMMAND_KEYWORDS = (
    (CriterionKind.TEST_PASSES, ("pytest", "test")),
    (CriterionKind.LINT_PASSES, ("ruff", "flake8", "pylint", "lint")),
    (CriterionKind.BUILD_PASSES, ("build", "compile", "make")),
)


def _command_kind(command: str) -> CriterionKind:
    lowered = command.lower()
    for kind, keywords in COMMAND_KEYWORDS:
        if any(k in lowered for k in keywords):
            return kind
    return CriterionKind.COMMAND_RUNS


def parse_criteria_from_description(description: str) -> List[SuccessCriterion]:
    """Infer criteria from free text: mentioned files and backticked commands."""
    criteria: List[SuccessCriterion] = []

    for match in FILE_MENTION.finditer(description):
        criteria.append(SuccessCriterion(
            kind=CriterionKind.FILE_EXISTS,
            description=f"File should exist: {match.group(1)}",
            validation=match.group(1),
        ))

    for match in BACKTICK_COMMAND.finditer(description):
        command = match.group(1).strip()
        if FILE_TOKEN.fullmatch(command) or any(c.validation == command for c in criteria):
            continue
        criteria.append(SuccessCriterion(
            kind=_command_kind(command),
            description=f"Command should succeed: {command}",
            validation=command,
        ))

    return criteria


def parse_criterion_text(text: str) -> Optional[SuccessCriterion]:
    """Parse one bullet from a "Success criteria:" list."""
    lowered = text.lower()
    command = BACKTICK_COMMAND.search(text)

    if ("file" in lowered or "exist" in lowered) and not command:
        file_match = FILE_TOKEN.search(text)
        if file_match:
            return SuccessCriterion(CriterionKind.FILE_EXISTS, text, file_match.group(1))

    if command:
        return SuccessCriterion(_command_kind(command.group(1)), text, command.group(1).strip())

    if "manual" in lowered or "review" in lowered:
        return SuccessCriterion(CriterionKind.CUSTOM, text, "")
    return None


def analyze_task_for_criteria(task_line: str, sub_lines: Iterable[str] = ()) -> List[SuccessCriterion]:
    """
    Collect criteria from a task's markdown block.

    Bullets under a "Success criteria:" marker are parsed one by one; every
    line is also scanned for file mentions and backticked commands.
    Duplicates (same kind and validation) are dropped.
    """
    criteria: List[SuccessCriterion] = []
    in_section = False

    for line in [task_line, *sub_lines]:
        stripped = line.strip()
        if "success criteria:" in stripped.lower():
            in_section = True
            continue

        if in_section and stripped.startswith("-"):
            parsed = parse_criterion_text(stripped[1:].strip())
            if parsed:
                criteria.append(parsed)
                continue

        criteria.extend(parse_criteria_from_description(stripped))

    unique: List[SuccessCriterion] = []
    for criterion in criteria:
        if not any(u.kind == criterion.kind and u.validation == criterion.validation for u in unique):
            unique.append(criterion)
    return unique
