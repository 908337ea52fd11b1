"""Concrete runner for single plan actions.

The executor only needs ``ActionOutcome.exit_code`` and ``error`` to decide
between retrying and re-planning. ``LocalActionRunner`` is the default
runner used by the CLI; callers can supply anything with the same call
signature.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from typing_extensions import assert_never

from agentic_reflection.models import (
    Command,
    ExecutionAction,
    FileDelete,
    FileWrite,
    LLMGenerate,
)
from agentic_reflection.storage import write_text_atomic

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_S = 300.0


@dataclass
class ActionOutcome:
    success: bool
    error: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None


class ActionRunner(Protocol):
    def __call__(self, action: ExecutionAction) -> ActionOutcome: ...


class LocalActionRunner:
    """Runs actions against a workspace directory on the local machine."""

    def __init__(self, workspace_root: Path, command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S):
        self.workspace_root = Path(workspace_root)
        self.command_timeout_s = command_timeout_s

    def resolve(self, target: str) -> Path:
        path = Path(target)
        return path if path.is_absolute() else self.workspace_root / path

    def __call__(self, action: ExecutionAction) -> ActionOutcome:
        if isinstance(action, FileWrite):
            return self._write(action)
        if isinstance(action, FileDelete):
            return self._delete(action)
        if isinstance(action, Command):
            return self._command(action)
        if isinstance(action, LLMGenerate):
            return ActionOutcome(
                success=False,
                error=f"llm-generate is not supported by the local runner: {action.target}",
            )
        assert_never(action)

    def _write(self, action: FileWrite) -> ActionOutcome:
        try:
            write_text_atomic(self.resolve(action.target), action.content)
        except OSError as e:
            return ActionOutcome(success=False, error=f"Failed to write file: {e}")
        logger.info("File written: %s", action.target)
        return ActionOutcome(success=True)

    def _delete(self, action: FileDelete) -> ActionOutcome:
        try:
            self.resolve(action.target).unlink()
        except OSError as e:
            return ActionOutcome(success=False, error=f"Failed to delete file: {e}")
        logger.info("File deleted: %s", action.target)
        return ActionOutcome(success=True)

    def _command(self, action: Command) -> ActionOutcome:
        command_line = action.command_line
        logger.info("Running command: %s", command_line)
        try:
            proc = subprocess.run(
                command_line,
                shell=True,
                cwd=str(self.workspace_root),
                capture_output=True,
                text=True,
                timeout=self.command_timeout_s,
            )
        except subprocess.TimeoutExpired:
            return ActionOutcome(
                success=False,
                error=f"Command timed out after {self.command_timeout_s:g}s",
                exit_code=-1,
            )
        except OSError as e:
            return ActionOutcome(success=False, error=str(e), exit_code=-1)

        if proc.stderr:
            logger.debug("[stderr] %s", proc.stderr.strip())
        return ActionOutcome(
            success=proc.returncode == 0,
            error=(proc.stderr or None) if proc.returncode != 0 else None,
            exit_code=proc.returncode,
            output=proc.stdout,
        )
