"""Thin runner: load a task definition, run the reflection loop, write a report."""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from agentic_reflection.action_executor import ActionExecutor
from agentic_reflection.action_runner import LocalActionRunner
from agentic_reflection.config import (
    Settings,
    load_settings,
    require_model_credentials,
    validate_reflection_config,
)
from agentic_reflection.constants import DEFAULT_PLANNER_MODEL, DEFAULT_REPORTS_DIR
from agentic_reflection.context_store import ContextStore
from agentic_reflection.decision_engine import DecisionEngine
from agentic_reflection.escalation import (
    ApprovalPort,
    AutoApprovalPort,
    ConsoleApprovalPort,
    ConsoleEscalationPort,
    HumanEscalationPort,
)
from agentic_reflection.events import EventBus
from agentic_reflection.models import RunContext
from agentic_reflection.planner import LLMPlanner, Planner
from agentic_reflection.reflection_controller import ReflectionController, ReflectionOutcome
from agentic_reflection.task_loader import TaskDefinition, load_task_definition, write_reflection_report

logger = logging.getLogger(__name__)


@dataclass
class TaskRun:
    definition: TaskDefinition
    outcome: ReflectionOutcome
    report_path: Path
    session_id: str


def default_session_id() -> str:
    return datetime.now().strftime("session-%Y%m%d-%H%M%S")


def build_planner(definition: TaskDefinition, use_llm: Optional[bool], model: str, trace: bool) -> Planner:
    """
    Pick the planner for a task.

    With ``use_llm`` unset, a definition that carries actions replays them and
    one without actions is planned by the model.
    """
    if use_llm is None:
        use_llm = not definition.actions
    if not use_llm:
        if not definition.actions:
            raise ValueError("Task definition has no actions; use --llm to plan with a model")
        return definition.planner()

    from agentic_reflection.model_client import OpenRouterClient

    client = OpenRouterClient(api_key=require_model_credentials())
    return LLMPlanner(client, model=model, trace=trace)


def build_controller(
    definition: TaskDefinition,
    planner: Planner,
    settings: Settings,
    workspace: Path,
    session_id: str,
    escalation: Optional[HumanEscalationPort] = None,
    approval: Optional[ApprovalPort] = None,
    events: Optional[EventBus] = None,
    cancel_event: Optional[threading.Event] = None,
    reflection_overrides: Optional[dict] = None,
) -> ReflectionController:
    """Wire one controller (and one executor) for one task run."""
    events = events or EventBus()
    store = ContextStore(Path(settings.state_dir), settings.context, events)
    runner = LocalActionRunner(workspace, command_timeout_s=settings.executor.command_timeout_s)
    executor = ActionExecutor(
        runner,
        workspace,
        config=settings.executor,
        retry_config=settings.retry,
        approval_port=approval,
        events=events,
    )
    reflection = definition.reflection_config(settings.reflection)
    if reflection_overrides:
        reflection = validate_reflection_config(replace(reflection, **reflection_overrides))
    engine = DecisionEngine(
        workspace,
        confidence_threshold=reflection.confidence_threshold,
        command_timeout_s=settings.evaluation_timeout_s,
    )
    return ReflectionController(
        planner,
        executor,
        engine,
        store.ledger,
        config=reflection,
        escalation=escalation,
        events=events,
        context_window=store.window(session_id),
        cancel_event=cancel_event,
    )


def run_task(
    task_file: Path,
    session_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    settings: Optional[Settings] = None,
    use_llm: Optional[bool] = None,
    model: str = DEFAULT_PLANNER_MODEL,
    auto_approve: bool = False,
    use_graph: bool = True,
    reports_dir: Optional[Path] = None,
    escalation: Optional[HumanEscalationPort] = None,
    events: Optional[EventBus] = None,
    cancel_event: Optional[threading.Event] = None,
    reflection_overrides: Optional[dict] = None,
) -> TaskRun:
    """
    Main entry point: load task, run reflection loop, write report.

    Args:
        task_file: Path to task definition (YAML or JSON)
        session_id: Session to record attempts under (default: timestamped)
        workspace: Directory actions and criteria resolve against (default: cwd)
        use_llm: Force the model planner on or off (default: by definition)
        use_graph: If True, run through LangGraph for tracing visibility
        reports_dir: Where the JSON report goes (default: WORKSPACE/execution/reports)

    Raises:
        ValueError: If the task file is invalid or has nothing to plan with.
        ConfigError: If settings or model credentials are missing or invalid.
    """
    settings = settings or load_settings()
    workspace = Path(workspace or Path.cwd()).resolve()
    session_id = session_id or default_session_id()

    definition = load_task_definition(Path(task_file))
    planner = build_planner(definition, use_llm, model, trace=use_graph)
    approval = AutoApprovalPort(approve=True) if auto_approve else ConsoleApprovalPort()

    controller = build_controller(
        definition,
        planner,
        settings,
        workspace,
        session_id,
        escalation=escalation or ConsoleEscalationPort(),
        approval=approval,
        events=events,
        cancel_event=cancel_event,
        reflection_overrides=reflection_overrides,
    )
    context = RunContext(spec_path=str(definition.source or task_file), session_id=session_id)

    logger.info("Running task %s in %s (session %s)", definition.task.id, workspace, session_id)
    if use_graph:
        from agentic_reflection.reflection_graph import run_reflection_graph
        outcome = run_reflection_graph(controller, definition.task, context)
    else:
        outcome = controller.run(definition.task, context)

    report_path = write_reflection_report(
        outcome,
        definition.task,
        Path(reports_dir) if reports_dir else workspace / DEFAULT_REPORTS_DIR,
        session_id=session_id,
        task_file=Path(task_file),
    )
    logger.info("Report written: %s", report_path)
    return TaskRun(definition=definition, outcome=outcome, report_path=report_path, session_id=session_id)
