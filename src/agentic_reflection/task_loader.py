"""Task definition files and reflection reports.

A task definition is a YAML or JSON file:

    task_id: add-greeting
    title: Add greeting module
    description: Create greeting.py
    success_criteria:
      - kind: file-exists
        description: module exists
        validation: greeting.py
    actions:            # optional static plan
      - type: file-write
        target: greeting.py
        content: "print('hi')"
    reflection:         # optional overrides
      max_iterations: 2
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
import yaml

from agentic_reflection.config import ReflectionConfig, apply_section_overrides, validate_reflection_config
from agentic_reflection.constants import DEFAULT_REPORTS_DIR
from agentic_reflection.decision_engine import analyze_task_for_criteria
from agentic_reflection.models import (
    ACTION_KINDS,
    CriterionKind,
    ExecutionAction,
    SuccessCriterion,
    Task,
    action_from_dict,
)
from agentic_reflection.planner import StaticPlanner
from agentic_reflection.reflection_controller import ReflectionOutcome
from agentic_reflection.storage import safe_name, write_json_atomic

logger = logging.getLogger(__name__)


TASK_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["task_id", "title"],
    "properties": {
        "task_id": {"type": "string", "minLength": 1},
        "title": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "success_criteria": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["validation"],
                "properties": {
                    "kind": {"enum": [k.value for k in CriterionKind]},
                    "type": {"enum": [k.value for k in CriterionKind]},
                    "description": {"type": "string"},
                    "validation": {"type": "string"},
                },
                "anyOf": [{"required": ["kind"]}, {"required": ["type"]}],
            },
        },
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type"],
                "properties": {
                    "type": {"enum": list(ACTION_KINDS)},
                    "target": {"type": "string"},
                    "path": {"type": "string"},
                    "command": {"type": "string"},
                    "content": {"type": "string"},
                    "args": {"type": "array", "items": {"type": "string"}},
                    "destructive": {"type": "boolean"},
                },
            },
        },
        "reflection": {"type": "object"},
    },
}


@dataclass
class TaskDefinition:
    task: Task
    actions: List[ExecutionAction] = field(default_factory=list)
    reflection_overrides: Dict[str, Any] = field(default_factory=dict)
    source: Optional[Path] = None

    def planner(self) -> StaticPlanner:
        return StaticPlanner(self.actions)

    def reflection_config(self, base: Optional[ReflectionConfig] = None) -> ReflectionConfig:
        """Merge the file's ``reflection`` block over ``base``."""
        config = apply_section_overrides(base or ReflectionConfig(), self.reflection_overrides, "reflection")
        return validate_reflection_config(config)


def parse_task_definition(data: Any, source: Optional[Path] = None) -> TaskDefinition:
    """
    Validate and build a task definition from already-parsed data.

    Raises:
        ValueError: If the data does not match the task schema.
    """
    validator = jsonschema.Draft7Validator(TASK_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
        errors.append(f"{error.message} at {path}")
    if errors:
        raise ValueError(f"Invalid task definition: {'; '.join(errors)}")

    description = data.get("description", "")
    criteria = [SuccessCriterion.from_dict(c) for c in data.get("success_criteria", [])]
    if not criteria:
        criteria = analyze_task_for_criteria(data["title"], description.splitlines())
        if criteria:
            logger.info("Derived %d success criteria from task description", len(criteria))

    task = Task(
        id=data["task_id"],
        title=data["title"],
        description=description,
        success_criteria=criteria,
    )
    return TaskDefinition(
        task=task,
        actions=[action_from_dict(a) for a in data.get("actions", [])],
        reflection_overrides=dict(data.get("reflection") or {}),
        source=source,
    )


def load_task_definition(task_file: Path) -> TaskDefinition:
    """
    Load a task definition from YAML or JSON.

    Required fields:
        - task_id: str
        - title: str

    Optional fields:
        - description: str
        - success_criteria: list of {kind, description, validation}
        - actions: list of tagged actions (static plan)
        - reflection: overrides for the reflection config
    """
    task_file = Path(task_file)
    content = task_file.read_text()

    if task_file.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    elif task_file.suffix == ".json":
        data = json.loads(content)
    else:
        raise ValueError(f"Unsupported file type: {task_file.suffix}. Use .yaml, .yml, or .json")

    return parse_task_definition(data, source=task_file)


def write_reflection_report(
    outcome: ReflectionOutcome,
    task: Task,
    output_dir: Optional[Path] = None,
    session_id: Optional[str] = None,
    task_file: Optional[Path] = None,
    end_time: Optional[datetime] = None,
) -> Path:
    """
    Write a structured reflection report to disk.

    Filename: {task_id}_{timestamp}.json
    """
    output_dir = Path(output_dir or DEFAULT_REPORTS_DIR)
    end_time = end_time or datetime.now()
    timestamp = end_time.strftime("%Y%m%d_%H%M%S")
    report_path = output_dir / f"{safe_name(task.id)}_{timestamp}.json"

    report = {
        "task_id": task.id,
        "session_id": session_id,
        "task_file": str(task_file) if task_file else None,
        "success": outcome.success,
        "state": outcome.state.value,
        "reason": outcome.reason,
        "iterations_used": outcome.iterations_used,
        "max_iterations": outcome.max_iterations,
        "final_confidence": outcome.final_confidence,
        "task": task.to_dict(),
        "result": outcome.result.to_dict(),
        "attempts": [a.to_dict() for a in outcome.attempts],
        "end_time": end_time.isoformat(),
    }

    write_json_atomic(report_path, report)
    return report_path
