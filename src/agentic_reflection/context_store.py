"""Session-scoped store bundling the conversation window and the attempt ledger."""

from pathlib import Path
from typing import Dict, List, Optional

from agentic_reflection.config import ContextLimits
from agentic_reflection.context_window import ContextWindow
from agentic_reflection.events import EventBus
from agentic_reflection.failure_ledger import FailureLedger
from agentic_reflection.models import AttemptRecord, FailurePattern


class ContextStore:
    """
    One durable store rooted at ``state_dir``.

    Windows are created lazily per session id; the ledger is shared but keys
    every document by (session, task).
    """

    def __init__(
        self,
        state_dir: Path,
        limits: Optional[ContextLimits] = None,
        events: Optional[EventBus] = None,
    ):
        self.state_dir = Path(state_dir)
        self.limits = limits or ContextLimits()
        self.events = events or EventBus()
        self.ledger = FailureLedger(self.state_dir)
        self._windows: Dict[str, ContextWindow] = {}

    def window(self, session_id: str) -> ContextWindow:
        if session_id not in self._windows:
            self._windows[session_id] = ContextWindow(
                self.state_dir, session_id, self.limits, self.events
            )
        return self._windows[session_id]

    def track_attempt(self, session_id: str, task_id: str, attempt: AttemptRecord) -> None:
        self.ledger.track_attempt(session_id, task_id, attempt)

    def get_failure_history(self, session_id: str, task_id: str) -> List[AttemptRecord]:
        return self.ledger.get_failure_history(session_id, task_id)

    def detect_failure_patterns(self, session_id: str, task_id: str) -> List[FailurePattern]:
        return self.ledger.detect_failure_patterns(session_id, task_id)
