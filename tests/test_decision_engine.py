"""Tests for success-criteria evaluation (fixture-based, local shell only)."""

import pytest

from agentic_reflection.decision_engine import (
    NO_CRITERIA_REASON,
    DecisionEngine,
    analyze_task_for_criteria,
    parse_criteria_from_description,
)
from agentic_reflection.models import (
    CriterionKind,
    ExecutionResult,
    SuccessCriterion,
    Task,
)


def make_task(*criteria):
    return Task(id="t", title="Task", success_criteria=list(criteria))


@pytest.fixture
def engine(workspace):
    return DecisionEngine(workspace, confidence_threshold=0.8, command_timeout_s=10)


# =============================================================================
# CONFIDENCE
# =============================================================================

class TestConfidence:
    """Confidence is the ratio of met criteria."""

    def test_no_criteria(self, engine):
        evaluation = engine.evaluate(make_task())
        assert evaluation.confidence == 0
        assert evaluation.detected is False
        assert evaluation.reasoning == NO_CRITERIA_REASON
        assert evaluation.missing_elements == []
        assert len(evaluation.suggestions) == 2

    def test_all_files_exist(self, engine, workspace):
        (workspace / "a.py").write_text("")
        (workspace / "b.py").write_text("")
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "both files", "a.py, b.py"),
        ))
        assert evaluation.confidence == 1.0
        assert evaluation.detected is True
        assert "All files exist" in evaluation.reasoning
        assert evaluation.missing_elements == []

    def test_partial_is_below_threshold(self, engine, workspace):
        (workspace / "a.py").write_text("")
        (workspace / "b.py").write_text("")
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "a", "a.py"),
            SuccessCriterion(CriterionKind.FILE_EXISTS, "b", "b.py"),
            SuccessCriterion(CriterionKind.FILE_EXISTS, "c", "c.py"),
        ))
        assert evaluation.confidence == pytest.approx(2 / 3)
        assert evaluation.detected is False
        assert evaluation.missing_elements == ["file-exists: c.py"]

    def test_detected_matches_threshold_exactly(self, workspace):
        (workspace / "a.py").write_text("")
        engine = DecisionEngine(workspace, confidence_threshold=0.5)
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "a", "a.py"),
            SuccessCriterion(CriterionKind.FILE_EXISTS, "b", "b.py"),
        ))
        assert evaluation.confidence == 0.5
        assert evaluation.detected is True

    def test_missing_count_matches_unmet_count(self, engine):
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "x", "x.py"),
            SuccessCriterion(CriterionKind.CUSTOM, "looks nice", ""),
        ))
        unmet = [r for r in evaluation.criteria_results if not r.met]
        assert len(evaluation.missing_elements) == len(unmet) == 2

    def test_evaluate_task_drops_details(self, engine, workspace):
        (workspace / "a.py").write_text("")
        result = engine.evaluate_task(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "a", "a.py"),
        ))
        assert result.confidence == 1.0
        assert result.provider == "heuristic"
        assert not hasattr(result, "missing_elements")


# =============================================================================
# CRITERION CHECKS
# =============================================================================

class TestCriterionChecks:
    def test_missing_files_listed(self, engine):
        outcome = engine.check_criterion(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "files", "x.py,y.py")
        )
        assert outcome.met is False
        assert outcome.reason == "Missing files: x.py, y.py"

    def test_command_success(self, engine):
        outcome = engine.check_criterion(
            SuccessCriterion(CriterionKind.COMMAND_RUNS, "true", "exit 0")
        )
        assert outcome.met is True
        assert outcome.reason == "Command succeeded: exit 0"

    def test_command_failure_reports_exit_and_stderr(self, engine):
        outcome = engine.check_criterion(
            SuccessCriterion(CriterionKind.TEST_PASSES, "tests", "echo broken >&2; exit 3")
        )
        assert outcome.met is False
        assert outcome.reason == "Command failed (exit 3): broken"

    def test_command_runs_in_workspace(self, engine, workspace):
        (workspace / "marker.txt").write_text("x")
        outcome = engine.check_criterion(
            SuccessCriterion(CriterionKind.BUILD_PASSES, "build", "test -f marker.txt")
        )
        assert outcome.met is True

    def test_command_timeout(self, workspace):
        engine = DecisionEngine(workspace, command_timeout_s=0.2)
        outcome = engine.check_criterion(
            SuccessCriterion(CriterionKind.COMMAND_RUNS, "slow", "sleep 5")
        )
        assert outcome.met is False
        assert "timed out" in outcome.reason

    def test_custom_needs_manual_validation(self, engine):
        outcome = engine.check_criterion(SuccessCriterion(CriterionKind.CUSTOM, "ux ok", ""))
        assert outcome.met is False
        assert "manual validation" in outcome.reason


# =============================================================================
# SUGGESTIONS AND EVIDENCE
# =============================================================================

class TestSuggestions:
    def test_file_suggestions(self, engine):
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.FILE_EXISTS, "x", "x.py"),
        ))
        assert "Create or verify file: x.py" in evaluation.suggestions

    def test_suggestions_deduplicated(self, engine):
        evaluation = engine.evaluate(make_task(
            SuccessCriterion(CriterionKind.TEST_PASSES, "unit", "exit 1"),
            SuccessCriterion(CriterionKind.TEST_PASSES, "integration", "exit 2"),
        ))
        assert evaluation.suggestions.count("Fix failing tests") == 1

    def test_execution_error_suggestion(self, engine):
        result = ExecutionResult(success=False, task_id="t", error="disk full")
        evaluation = engine.evaluate(
            make_task(SuccessCriterion(CriterionKind.FILE_EXISTS, "x", "x.py")),
            result,
        )
        assert evaluation.suggestions[-1] == "Address execution error: disk full"

    def test_evidence_from_execution_result(self, engine, workspace):
        (workspace / "src").mkdir()
        (workspace / "src" / "app.py").write_text("")
        result = ExecutionResult(success=True, task_id="t", files_created=["src/app.py"])
        evaluation = engine.evaluate(
            make_task(SuccessCriterion(CriterionKind.FILE_EXISTS, "app", "src/app.py")),
            result,
        )
        assert evaluation.criteria_results[0].evidence == "Files created: src/app.py"


# =============================================================================
# CRITERIA FROM TEXT
# =============================================================================

class TestCriteriaFromText:
    def test_description_mentions(self):
        criteria = parse_criteria_from_description("Create greeting.py and make `pytest -q` pass")
        kinds = [(c.kind, c.validation) for c in criteria]
        assert (CriterionKind.FILE_EXISTS, "greeting.py") in kinds
        assert (CriterionKind.TEST_PASSES, "pytest -q") in kinds

    def test_success_criteria_section(self):
        criteria = analyze_task_for_criteria(
            "- [ ] Add config loader",
            [
                "  Success criteria:",
                "  - File config.py exists",
                "  - `ruff check .` passes",
                "  - Manual review of naming",
            ],
        )
        assert [c.kind for c in criteria] == [
            CriterionKind.FILE_EXISTS,
            CriterionKind.LINT_PASSES,
            CriterionKind.CUSTOM,
        ]
        assert criteria[0].validation == "config.py"

    def test_duplicates_dropped(self):
        criteria = analyze_task_for_criteria(
            "Create app.py",
            ["Success criteria:", "- File app.py exists"],
        )
        assert len(criteria) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
