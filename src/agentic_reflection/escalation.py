"""Human-in-the-loop ports: escalation on persistent failure and approval of
destructive actions.

The core only sees the abstract ports. The console implementations use
click prompts; the scripted/auto ones serve non-interactive runs.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import click


PROVIDE_GUIDANCE = "Provide Guidance"
SKIP_TASK = "Skip Task"
STOP_EXECUTION = "Stop Execution"

ESCALATION_OPTIONS = (PROVIDE_GUIDANCE, SKIP_TASK, STOP_EXECUTION)


class HumanEscalationPort(ABC):
    """Ask a human to decide how a stuck loop should proceed."""

    @abstractmethod
    def prompt_choice(self, message: str, options: Sequence[str]) -> Optional[str]:
        """Return one of ``options``, or None if the prompt was dismissed."""
        pass

    @abstractmethod
    def prompt_free_text(self, prompt: str) -> Optional[str]:
        """Return the entered text, or None if nothing was entered."""
        pass


class ConsoleEscalationPort(HumanEscalationPort):
    def prompt_choice(self, message: str, options: Sequence[str]) -> Optional[str]:
        click.echo(message)
        click.echo()
        for i, option in enumerate(options, start=1):
            click.echo(f"  [{i}] {option}")
        index = click.prompt(
            "Choice",
            type=click.IntRange(1, len(options)),
            default=len(options),
        )
        return options[index - 1]

    def prompt_free_text(self, prompt: str) -> Optional[str]:
        text = click.prompt(prompt, default="", show_default=False).strip()
        return text or None


class ScriptedEscalationPort(HumanEscalationPort):
    """Replays pre-recorded answers; dismisses once they run out."""

    def __init__(self, choices: Iterable[str] = (), texts: Iterable[Optional[str]] = ()):
        self._choices = deque(choices)
        self._texts = deque(texts)
        self.messages: List[str] = []

    def prompt_choice(self, message: str, options: Sequence[str]) -> Optional[str]:
        self.messages.append(message)
        if not self._choices:
            return None
        choice = self._choices.popleft()
        if choice not in options:
            raise ValueError(f"Scripted choice {choice!r} is not one of {list(options)}")
        return choice

    def prompt_free_text(self, prompt: str) -> Optional[str]:
        return self._texts.popleft() if self._texts else None


# =============================================================================
# APPROVAL OF DESTRUCTIVE ACTIONS
# =============================================================================

@dataclass
class ApprovalRequest:
    session_id: str
    task_id: str
    operation: str
    description: str
    files: Optional[List[str]] = None


@dataclass
class ApprovalResult:
    approved: bool
    reason: Optional[str] = None


class ApprovalPort(ABC):
    @abstractmethod
    def request_approval(self, request: ApprovalRequest) -> ApprovalResult:
        pass


class ConsoleApprovalPort(ApprovalPort):
    def request_approval(self, request: ApprovalRequest) -> ApprovalResult:
        click.echo(f"Destructive operation requested: {request.description}")
        if click.confirm("Approve?", default=False):
            return ApprovalResult(approved=True)
        return ApprovalResult(approved=False, reason="User denied operation")


class AutoApprovalPort(ApprovalPort):
    """Answers every request the same way, recording what was asked."""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.requests: List[ApprovalRequest] = []

    def request_approval(self, request: ApprovalRequest) -> ApprovalResult:
        self.requests.append(request)
        if self.approve:
            return ApprovalResult(approved=True)
        return ApprovalResult(approved=False, reason="Destructive operations are not allowed")
