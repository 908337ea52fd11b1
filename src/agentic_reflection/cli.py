"""CLI entrypoint for the reflection loop."""

import logging
import signal
import threading
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv

from agentic_reflection.config import ConfigError, load_settings

# Load .env file on CLI startup
load_dotenv()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _settings(ctx: click.Context, state_dir=None):
    settings = load_settings(ctx.obj.get("config_path"))
    if state_dir:
        settings = replace(settings, state_dir=state_dir)
    return settings


@click.group()
@click.version_option(package_name="agentic-reflection")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML settings file (environment variables still win).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: str):
    """Reflect CLI - plan, execute, evaluate and re-plan until a task is done."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config_path) if config_path else None


@cli.command("run")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--session", "session_id", default=None, help="Session id (default: timestamped).")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False),
    default=".",
    help="Directory that actions and success criteria resolve against.",
)
@click.option("--state-dir", type=click.Path(file_okay=False), default=None, help="Ledger/context directory.")
@click.option(
    "--reports-dir",
    type=click.Path(),
    default=None,
    help="Directory for reflection reports (default: WORKSPACE/execution/reports)",
)
@click.option("--max-iterations", type=int, default=None, help="Override max reflection iterations.")
@click.option("--threshold", type=float, default=None, help="Override confidence threshold (0-1).")
@click.option(
    "--llm/--static",
    "use_llm",
    default=None,
    help="Plan with the model or replay the file's actions (default: static if actions are given).",
)
@click.option("--model", default=None, help="Planner model id (OpenRouter).")
@click.option("--auto-approve", is_flag=True, help="Approve destructive actions without prompting.")
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
@click.pass_context
def run_cmd(
    ctx: click.Context,
    task_file: str,
    session_id: str,
    workspace: str,
    state_dir: str,
    reports_dir: str,
    max_iterations: int,
    threshold: float,
    use_llm: bool,
    model: str,
    auto_approve: bool,
    no_trace: bool,
):
    """Run the reflection loop for one task definition file.

    TASK_FILE: Path to task definition (YAML or JSON)

    Exits 0 when the task reaches the confidence threshold, 1 otherwise.

    Task definition format:

    \b
        task_id: my-task-001
        title: Create greeting module
        success_criteria:
          - kind: file-exists
            description: module exists
            validation: greeting.py
        actions:          # optional; omit to plan with --llm
          - type: file-write
            target: greeting.py
            content: "print('hello')"
    """
    from agentic_reflection.constants import DEFAULT_PLANNER_MODEL
    from agentic_reflection.events import REFLECTION_ITERATION, EventBus
    from agentic_reflection.task_runner import run_task

    overrides = {}
    if max_iterations is not None:
        overrides["max_iterations"] = max_iterations
    if threshold is not None:
        overrides["confidence_threshold"] = threshold

    events = EventBus()
    events.subscribe(REFLECTION_ITERATION, lambda e: click.echo(
        f"  Iteration {e.data['iteration']}/{e.data['max_iterations']}: "
        f"{'success' if e.data['success'] else 'failed'}, "
        f"confidence {e.data['confidence']:.2f}"
    ))

    cancel_event = threading.Event()

    def _cancel(signum, frame):
        click.echo("\nCancelling after the current step...", err=True)
        cancel_event.set()

    task_path = Path(task_file).resolve()
    click.echo(f"Running task: {task_path}")
    if not no_trace:
        click.echo("  (LangGraph tracing enabled)")
    click.echo()

    previous_handler = signal.signal(signal.SIGINT, _cancel)
    try:
        settings = _settings(ctx, state_dir)
        task_run = run_task(
            task_path,
            session_id=session_id,
            workspace=Path(workspace),
            settings=settings,
            use_llm=use_llm,
            model=model or DEFAULT_PLANNER_MODEL,
            auto_approve=auto_approve,
            use_graph=not no_trace,
            reports_dir=Path(reports_dir) if reports_dir else None,
            events=events,
            cancel_event=cancel_event,
            reflection_overrides=overrides,
        )
    except (ConfigError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        raise SystemExit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    outcome = task_run.outcome
    click.echo()
    click.echo(f"Session:     {task_run.session_id}")
    click.echo(f"State:       {outcome.state.value}")
    click.echo(f"Iterations:  {outcome.iterations_used}/{outcome.max_iterations}")
    if outcome.final_confidence is not None:
        click.echo(f"Confidence:  {outcome.final_confidence:.2f}")
    click.echo(f"Report:      {task_run.report_path}")
    if outcome.success:
        click.echo("✓ Task complete")
        raise SystemExit(0)
    click.echo(f"✗ {outcome.result.error}", err=True)
    raise SystemExit(1)


@cli.command("history")
@click.argument("session_id")
@click.argument("task_id")
@click.option("--state-dir", type=click.Path(file_okay=False), default=None, help="Ledger directory.")
@click.pass_context
def history_cmd(ctx: click.Context, session_id: str, task_id: str, state_dir: str):
    """Show the recorded attempts for a task."""
    from agentic_reflection.errors import LedgerCorruptError
    from agentic_reflection.failure_ledger import FailureLedger
    from agentic_reflection.observe import print_history

    try:
        settings = _settings(ctx, state_dir)
        ledger = FailureLedger(Path(settings.state_dir))
        print_history(
            ledger,
            session_id,
            task_id,
            threshold=settings.reflection.persistent_failure_threshold,
            confidence_threshold=settings.reflection.confidence_threshold,
        )
    except (ConfigError, LedgerCorruptError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.command("patterns")
@click.argument("session_id")
@click.argument("task_id")
@click.option("--threshold", type=int, default=None, help="Occurrences that make a pattern persistent.")
@click.option("--state-dir", type=click.Path(file_okay=False), default=None, help="Ledger directory.")
@click.pass_context
def patterns_cmd(ctx: click.Context, session_id: str, task_id: str, threshold: int, state_dir: str):
    """List failure patterns for a task in the order they first appeared.

    Exits 1 if any pattern is persistent.
    """
    from agentic_reflection.errors import LedgerCorruptError
    from agentic_reflection.failure_ledger import FailureLedger
    from agentic_reflection.observe import print_patterns

    try:
        settings = _settings(ctx, state_dir)
        ledger = FailureLedger(Path(settings.state_dir))
        patterns = ledger.detect_failure_patterns(session_id, task_id)
    except (ConfigError, LedgerCorruptError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if threshold is None:
        threshold = settings.reflection.persistent_failure_threshold
    print_patterns(patterns, threshold)
    if any(p.is_persistent(threshold) for p in patterns):
        raise SystemExit(1)


@cli.command("context-stats")
@click.argument("session_id")
@click.option("--state-dir", type=click.Path(file_okay=False), default=None, help="Context directory.")
@click.pass_context
def context_stats_cmd(ctx: click.Context, session_id: str, state_dir: str):
    """Show token usage of a session's context window."""
    from agentic_reflection.context_window import ContextWindow
    from agentic_reflection.errors import LedgerCorruptError
    from agentic_reflection.observe import print_context_stats

    try:
        settings = _settings(ctx, state_dir)
        window = ContextWindow(Path(settings.state_dir), session_id, settings.context)
    except (ConfigError, LedgerCorruptError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    print_context_stats(window)


@cli.command("check-config")
@click.option("--require-model", is_flag=True, help="Also require OPENROUTER_API_KEY.")
@click.pass_context
def check_config(ctx: click.Context, require_model: bool):
    """Check that settings load and print the effective values."""
    from agentic_reflection.config import require_model_credentials

    try:
        settings = _settings(ctx)
        if require_model:
            require_model_credentials()
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)

    r = settings.reflection
    click.echo("Configuration loaded successfully!")
    click.echo(f"  state_dir: {settings.state_dir}")
    click.echo(f"  reflection.enabled: {r.enabled}")
    click.echo(f"  reflection.max_iterations: {r.max_iterations}")
    click.echo(f"  reflection.confidence_threshold: {r.confidence_threshold}")
    click.echo(f"  reflection.persistent_failure_threshold: {r.persistent_failure_threshold}")
    click.echo(f"  retry.max_retries: {settings.retry.max_retries}")
    click.echo(f"  executor.max_file_modifications: {settings.executor.max_file_modifications}")
    click.echo(f"  context.max_total_tokens: {settings.context.max_total_tokens}")
    if require_model:
        click.echo("  OPENROUTER_API_KEY: [set]")


if __name__ == "__main__":
    cli()
