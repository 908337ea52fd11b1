"""Read-only observation surface over the attempt ledger and context window."""

from typing import List

import click

from agentic_reflection.context_window import ContextWindow
from agentic_reflection.failure_ledger import FailureLedger, compute_failure_patterns
from agentic_reflection.models import AttemptRecord, FailurePattern


def format_duration(ms: float) -> str:
    """Format a millisecond duration in human-readable form."""
    seconds = ms / 1000
    if seconds < 1:
        return f"{ms:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def _header(title: str) -> None:
    click.echo("=" * 60)
    click.echo(title)
    click.echo("=" * 60)
    click.echo()


def _section(title: str) -> None:
    click.echo(title)
    click.echo("-" * 40)


def print_patterns(patterns: List[FailurePattern], threshold: int) -> None:
    _section("FAILURE PATTERNS")
    if not patterns:
        click.echo("  No failures recorded.")
        click.echo()
        return
    for p in patterns:
        marker = "!" if p.is_persistent(threshold) else " "
        click.echo(f"  {marker} {p.occurrences}x  {p.error_message[:70]}")
        click.echo(f"        first {p.first_seen[:19]}, last {p.last_seen[:19]}")
    click.echo()


def print_history(
    ledger: FailureLedger,
    session_id: str,
    task_id: str,
    threshold: int = 2,
    confidence_threshold: float = 0.8,
) -> List[AttemptRecord]:
    """
    Print a human-readable summary of a task's reflection attempts.

    Returns the attempts that were printed.
    """
    attempts = ledger.get_failure_history(session_id, task_id)

    _header(f"REFLECTION HISTORY: {task_id} (session {session_id})")

    if not attempts:
        click.echo("No attempts recorded.")
        return attempts

    latest = attempts[-1]
    _section("LATEST ATTEMPT")
    click.echo(f"  Iteration:   {latest.iteration}")
    click.echo(f"  Result:      {'SUCCESS' if latest.result.success else 'FAILED'}")
    click.echo(f"  Confidence:  {latest.confidence:.2f}")
    click.echo(f"  Duration:    {format_duration(latest.result.duration_ms)}")
    click.echo(f"  Time:        {latest.timestamp[:19]}")
    if latest.result.error:
        click.echo("  Error:")
        for line in latest.result.error.strip().split("\n")[:3]:
            click.echo(f"    {line[:70]}")
    click.echo()

    _section("HISTORY")
    for a in attempts:
        status_icon = "✓" if a.result.success else "✗"
        click.echo(f"    {status_icon} #{a.iteration} {a.timestamp[:19]} confidence {a.confidence:.2f}")
        click.echo(f"      {a.evaluation_reason[:70]}")
    click.echo()

    patterns = compute_failure_patterns(attempts)
    print_patterns(patterns, threshold)

    _section("VERDICT")
    if latest.confidence >= confidence_threshold:
        click.echo("  ✓ COMPLETE - Confidence threshold reached")
    elif any(p.is_persistent(threshold) for p in patterns):
        click.echo("  ✗ STUCK - Persistent failure pattern, needs guidance")
    else:
        click.echo(f"  ◐ IN PROGRESS - Last confidence {latest.confidence:.2f}")
    click.echo()
    return attempts


def print_context_stats(window: ContextWindow) -> None:
    stats = window.stats()
    _header(f"CONTEXT WINDOW: {stats['session_id']}")
    click.echo(f"  Entries:     {stats['entry_count']}")
    click.echo(f"  Tokens:      {stats['current_tokens']:,} / {stats['max_tokens']:,}")
    click.echo(f"  Usage:       {stats['usage_percentage']:.1f}%")
    click.echo(f"  Summarized:  {'yes' if stats['summarized'] else 'no'}")
    click.echo()
