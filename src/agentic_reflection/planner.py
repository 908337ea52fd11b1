"""Planners turn a task plus failure context into a list of actions.

The reflection loop depends only on ``Planner.plan``. ``LLMPlanner`` asks a
chat model for a JSON plan; ``StaticPlanner`` replays a fixed plan.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import jsonschema

from agentic_reflection.constants import (
    DEFAULT_PLANNER_MAX_TOKENS,
    DEFAULT_PLANNER_MODEL,
    DEFAULT_PLANNER_TIMEOUT_S,
)
from agentic_reflection.errors import PlannerError
from agentic_reflection.failure_ledger import persistent_patterns
from agentic_reflection.model_client import Message, ModelClient, ModelClientError, traced_complete
from agentic_reflection.models import (
    ACTION_KINDS,
    ExecutionAction,
    FailureContext,
    FailurePattern,
    PlannerResult,
    PlanRequest,
    action_from_dict,
    describe_action,
)

logger = logging.getLogger(__name__)


class Planner(ABC):
    """Abstract interface for planners."""

    @abstractmethod
    def plan(self, request: PlanRequest) -> PlannerResult:
        """
        Propose the actions for one iteration.

        Args:
            request: Task, run context and the failure context so far

        Returns:
            PlannerResult; failures are reported in it, not raised
        """
        pass


class StaticPlanner(Planner):
    """Returns the same actions on every iteration."""

    def __init__(self, actions: Sequence[ExecutionAction]):
        self.actions = list(actions)

    def plan(self, request: PlanRequest) -> PlannerResult:
        if not self.actions:
            return PlannerResult(success=False, error="No actions defined for task")
        return PlannerResult(success=True, actions=list(self.actions), reasoning="Static plan")


# =============================================================================
# PLAN RESPONSE FORMAT
# =============================================================================

PLAN_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["actions"],
    "properties": {
        "reasoning": {"type": "string"},
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["type", "target"],
                "properties": {
                    "type": {"enum": list(ACTION_KINDS)},
                    "target": {"type": "string", "minLength": 1},
                    "content": {"type": "string"},
                    "args": {"type": "array", "items": {"type": "string"}},
                    "destructive": {"type": "boolean"},
                },
            },
        },
    },
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def parse_plan_response(content: str) -> PlannerResult:
    """
    Parse a model response into a planner result.

    Accepts a bare JSON object or one inside a fenced code block.

    Raises:
        PlannerError: If the response is not valid JSON or breaks the schema.
    """
    match = _FENCED_JSON.search(content)
    raw = match.group(1) if match else content.strip()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PlannerError(f"Planner response is not valid JSON: {e}")

    validator = jsonschema.Draft7Validator(PLAN_SCHEMA)
    errors = []
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
        errors.append(f"{error.message} at {path}")
    if errors:
        raise PlannerError(f"Planner response failed validation: {'; '.join(errors)}")

    actions = [action_from_dict(a) for a in data["actions"]]
    if not actions:
        raise PlannerError("Planner returned no actions")
    return PlannerResult(success=True, actions=actions, reasoning=data.get("reasoning"))


# =============================================================================
# PROMPT
# =============================================================================

PLANNER_SYSTEM_PROMPT = """You plan concrete workspace actions that complete a task.

Respond with a single JSON object and nothing else:
{"reasoning": "<one paragraph>", "actions": [
  {"type": "file-write", "target": "<path>", "content": "<full file>"},
  {"type": "file-delete", "target": "<path>", "destructive": true},
  {"type": "command", "target": "<executable>", "args": ["<arg>", ...]}
]}

Paths are relative to the workspace root. Write complete file contents."""


def summarize_failure_patterns(patterns: List[FailurePattern], recurring_threshold: int = 2) -> str:
    recurring = persistent_patterns(patterns, recurring_threshold)
    occasional = [p for p in patterns if p not in recurring]
    lines: List[str] = []

    if recurring:
        lines.append("**Recurring issues:**")
        for p in recurring:
            lines.append(f'- "{p.error_message}" (occurred {p.occurrences} times)')
            lines.append(f"  First seen: {p.first_seen}, last seen: {p.last_seen}")
        lines.append("")
    if occasional:
        lines.append("**Other issues:**")
        lines.extend(f'- "{p.error_message}"' for p in occasional)
        lines.append("")
    if recurring:
        lines.append(
            "The recurring issues point to a systematic problem; change the approach, "
            "not just the details."
        )
    return "\n".join(lines)


def different_approach_instructions(failure_context: FailureContext) -> str:
    lines = [
        "## Try a Different Approach",
        "",
        f"The previous {len(failure_context.previous_attempts)} attempt(s) did not succeed. "
        "Do not repeat the same actions with minor tweaks, reuse paths that caused errors, "
        "or rerun commands that already failed.",
        "",
    ]
    messages = " ".join(p.error_message.lower() for p in failure_context.failure_patterns)
    if "file" in messages:
        lines.append("File errors seen: verify paths and that parent directories exist.")
    if "command" in messages:
        lines.append("Command errors seen: verify the command exists and its arguments.")
    if "permission" in messages:
        lines.append("Permission errors seen: check write access or use another location.")
    return "\n".join(lines)


def build_planning_prompt(request: PlanRequest) -> str:
    """
    Build the user prompt for one planning call.

    Args:
        request: Task, run context and optional failure context

    Returns:
        Markdown prompt. Sections for previous attempts, recurring errors,
        files created so far and user guidance appear only when the failure
        context has something to say.
    """
    task, context, fc = request.task, request.context, request.failure_context

    previous = "\n".join(f"- {t.title}" for t in context.previous_tasks[-3:]) or "None"
    criteria = "\n".join(
        f"- {c.kind.value}: {c.validation} ({c.description})" for c in task.success_criteria
    ) or "None defined"

    sections = [
        "# Task Implementation Request",
        "",
        "## Current Task",
        task.title,
    ]
    if task.description:
        sections += ["", task.description]
    sections += [
        "",
        "## Success Criteria",
        criteria,
        "",
        "## Context",
        f"- Spec: {context.spec_path}",
        f"- Session: {context.session_id}",
        f"- Phase: {context.phase}",
        "",
        "## Previous Tasks",
        previous,
    ]

    if fc is not None and fc.previous_attempts:
        sections += [
            "",
            "## Previous Attempts",
            f"This task has been attempted {len(fc.previous_attempts)} time(s) before.",
        ]
        for attempt in fc.previous_attempts:
            sections += ["", f"### Attempt {attempt.iteration} ({attempt.timestamp})"]
            sections += [f"- {describe_action(a)}" for a in attempt.actions] or ["- (no actions)"]
            sections.append(f"Result: {'Success' if attempt.result.success else 'Failed'}")
            if attempt.result.error:
                sections.append(f"Error: {attempt.result.error}")
            sections.append(
                f"Evaluation: {attempt.evaluation_reason} (confidence: {attempt.confidence:.2f})"
            )

        if fc.failure_patterns:
            sections += ["", "## Failure Patterns", summarize_failure_patterns(fc.failure_patterns)]
        if fc.environment_state.files_created:
            sections += ["", "## Files Created in Previous Attempts"]
            sections += [f"- {f}" for f in fc.environment_state.files_created]
        if fc.environment_state.files_modified:
            sections += ["", "## Files Modified in Previous Attempts"]
            sections += [f"- {f}" for f in fc.environment_state.files_modified]
        sections += ["", different_approach_instructions(fc)]

    if fc is not None and fc.user_guidance:
        sections += ["", "## Guidance From The User", fc.user_guidance]

    sections += [
        "",
        "## Instructions",
        "Return the JSON plan of actions that makes every success criterion hold.",
    ]
    return "\n".join(sections)


class LLMPlanner(Planner):
    """Plans by asking a chat model for a JSON list of actions."""

    def __init__(
        self,
        client: ModelClient,
        model: str = DEFAULT_PLANNER_MODEL,
        timeout: float = DEFAULT_PLANNER_TIMEOUT_S,
        max_tokens: int = DEFAULT_PLANNER_MAX_TOKENS,
        trace: bool = False,
    ):
        """
        Args:
            client: Chat completion client
            model: Model identifier
            timeout: Request timeout in seconds
            max_tokens: Maximum output tokens per plan
            trace: If True, wrap each call in a LangSmith span
        """
        self.client = client
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.trace = trace

    def plan(self, request: PlanRequest) -> PlannerResult:
        """
        Ask the model for a plan and parse it.

        Client errors and unparseable responses become a failed
        PlannerResult carrying the error text.
        """
        messages = [
            Message(role="system", content=PLANNER_SYSTEM_PROMPT),
            Message(role="user", content=build_planning_prompt(request)),
        ]
        iteration = request.failure_context.iteration if request.failure_context else 1

        try:
            if self.trace:
                completion = traced_complete(
                    self.client, messages, self.model,
                    task_id=request.task.id,
                    iteration=iteration,
                    timeout=self.timeout,
                    max_tokens=self.max_tokens,
                )
            else:
                completion = self.client.complete(
                    messages=messages,
                    model=self.model,
                    timeout=self.timeout,
                    max_tokens=self.max_tokens,
                )
            return parse_plan_response(completion.content)
        except (ModelClientError, PlannerError, ValueError) as e:
            logger.warning("Planning failed for %s: %s", request.task.id, e)
            return PlannerResult(success=False, error=str(e))


def planner_error(result: PlannerResult) -> Optional[str]:
    """Error message for an unusable planner result, or None if usable."""
    if not result.success:
        return result.error or "Planner failed to produce actions"
    if not result.actions:
        return "Planner returned no actions"
    return None
