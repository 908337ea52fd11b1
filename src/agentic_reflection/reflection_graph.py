"""LangGraph wrapper for the reflection loop - trace harness only.

Each phase of ``ReflectionController`` becomes a node in a StateGraph so
that iterations are visible in LangGraph Studio / LangSmith.

No orchestration logic lives here. The nodes call the controller's phase
methods, so graph and plain runs behave identically.
"""

import logging
from typing import Any, Optional

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from agentic_reflection.errors import ErrorKind
from agentic_reflection.models import CheckboxState, ExecutionResult, RunContext, Task
from agentic_reflection.reflection_controller import (
    ReflectionController,
    ReflectionOutcome,
    ReflectionState,
    RunState,
)

logger = logging.getLogger(__name__)

NODES_PER_ITERATION = 5


class ReflectionGraphState(TypedDict):
    """Graph state. The controller and run bookkeeping ride along by reference."""
    task_id: str
    iteration: int
    max_iterations: int
    status: str
    confidence: Optional[float]
    controller: Any
    run: Any


def _sync(state: ReflectionGraphState, run: RunState) -> ReflectionGraphState:
    evaluation = run.last_evaluation
    return {
        **state,
        "iteration": run.iteration,
        "status": run.state.value,
        "confidence": evaluation.confidence if evaluation else None,
    }


# --- Graph Nodes ---

def node_begin_iteration(state: ReflectionGraphState) -> ReflectionGraphState:
    """Advance the iteration counter; aborts here if cancelled."""
    state["controller"].begin_iteration(state["run"])
    return _sync(state, state["run"])


def node_check_persistent_failure(state: ReflectionGraphState) -> ReflectionGraphState:
    """Escalate to a human when an error keeps recurring."""
    state["controller"].check_persistent_failure(state["run"])
    return _sync(state, state["run"])


def node_plan_execute(state: ReflectionGraphState) -> ReflectionGraphState:
    """Ask the planner for actions and run them."""
    state["controller"].plan_and_execute(state["run"])
    return _sync(state, state["run"])


def node_evaluate(state: ReflectionGraphState) -> ReflectionGraphState:
    """Score the task's success criteria."""
    state["controller"].evaluate(state["run"])
    return _sync(state, state["run"])


def node_record(state: ReflectionGraphState) -> ReflectionGraphState:
    """Append the attempt to the ledger and decide what happens next."""
    state["controller"].record(state["run"])
    return _sync(state, state["run"])


# --- Conditional Edges ---

def is_finished(state: ReflectionGraphState) -> str:
    return "end" if state["run"].outcome is not None else "next"


# --- Graph Builder ---

def build_reflection_graph() -> StateGraph:
    """
    Build the reflection graph.

    Flow:
        begin -> check_persistent -> plan_execute -> evaluate -> record
          ^                                                        |
          +------------------------ (continue) --------------------+
        begin / check_persistent / record -> (finished?) -> end
    """
    graph = StateGraph(ReflectionGraphState)

    graph.add_node("begin", node_begin_iteration)
    graph.add_node("check_persistent", node_check_persistent_failure)
    graph.add_node("plan_execute", node_plan_execute)
    graph.add_node("evaluate", node_evaluate)
    graph.add_node("record", node_record)

    graph.set_entry_point("begin")

    graph.add_conditional_edges("begin", is_finished, {"end": END, "next": "check_persistent"})
    graph.add_conditional_edges("check_persistent", is_finished, {"end": END, "next": "plan_execute"})
    graph.add_edge("plan_execute", "evaluate")
    graph.add_edge("evaluate", "record")
    graph.add_conditional_edges("record", is_finished, {"end": END, "next": "begin"})

    return graph


def run_reflection_graph(
    controller: ReflectionController,
    task: Task,
    context: RunContext,
    user_guidance: Optional[str] = None,
) -> ReflectionOutcome:
    """
    Run the reflection loop through the graph and return its outcome.

    This is the traced equivalent of ``ReflectionController.run``.
    """
    if not controller.config.enabled:
        return controller.run(task, context, user_guidance)

    try:
        run = controller.start(task, context, user_guidance)
        initial_state: ReflectionGraphState = {
            "task_id": task.id,
            "iteration": 0,
            "max_iterations": controller.config.max_iterations,
            "status": ReflectionState.PLANNING.value,
            "confidence": None,
            "controller": controller,
            "run": run,
        }
        recursion_limit = NODES_PER_ITERATION * (controller.config.max_iterations + 1) + 5
        final_state = reflection_graph.invoke(
            initial_state,
            config={"recursion_limit": recursion_limit, "run_name": f"reflect_{task.id}"},
        )
        return final_state["run"].outcome
    except Exception as e:
        logger.exception("Reflection graph crashed for task %s", task.id)
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
            max_iterations=controller.config.max_iterations,
            reason="internal error",
        )


# Pre-compiled graph for Studio discovery
reflection_graph = build_reflection_graph().compile()
