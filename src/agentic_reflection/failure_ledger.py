"""Append-only attempt ledger per (session, task), with pattern detection."""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List

from agentic_reflection.errors import LedgerCorruptError
from agentic_reflection.models import AttemptRecord, FailurePattern
from agentic_reflection.storage import attempts_path, read_json, write_json_atomic

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "Unknown error"


def compute_failure_patterns(attempts: Iterable[AttemptRecord]) -> List[FailurePattern]:
    """
    Group failed attempts by exact error message.

    Occurrences are a total count over the whole history, not a run of
    consecutive iterations. Attempts whose result succeeded and carries no
    error are not failures and are skipped. Patterns come back in the
    order their error was first seen.
    """
    counts: Dict[str, dict] = {}

    for attempt in attempts:
        error = attempt.result.error
        if not error:
            if attempt.result.success:
                continue
            error = UNKNOWN_ERROR

        entry = counts.get(error)
        if entry is None:
            counts[error] = {
                "count": 1,
                "first_seen": attempt.timestamp,
                "last_seen": attempt.timestamp,
            }
        else:
            entry["count"] += 1
            entry["last_seen"] = attempt.timestamp

    patterns = [
        FailurePattern(
            error_message=message,
            occurrences=data["count"],
            first_seen=data["first_seen"],
            last_seen=data["last_seen"],
        )
        for message, data in counts.items()
    ]
    return patterns


def persistent_patterns(patterns: Iterable[FailurePattern], threshold: int) -> List[FailurePattern]:
    return [p for p in patterns if p.is_persistent(threshold)]


class FailureLedger:
    """
    Durable attempt history.

    Each (session, task) pair owns one JSON document holding its ordered
    attempts. Every append rewrites that document atomically, so a reload
    always yields exactly the records that were tracked, in order.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._lock = threading.Lock()

    def _load(self, session_id: str, task_id: str) -> dict:
        path = attempts_path(self.state_dir, session_id, task_id)
        data = read_json(path, default=None)
        if data is None:
            return {"session_id": session_id, "task_id": task_id, "attempts": []}
        if not isinstance(data, dict) or not isinstance(data.get("attempts"), list):
            raise LedgerCorruptError(f"Malformed ledger document: {path}")
        return data

    def track_attempt(self, session_id: str, task_id: str, attempt: AttemptRecord) -> None:
        """Durably append one attempt record."""
        with self._lock:
            data = self._load(session_id, task_id)
            data["attempts"].append(attempt.to_dict())
            write_json_atomic(attempts_path(self.state_dir, session_id, task_id), data)
        logger.debug(
            "Tracked attempt %d for %s/%s (confidence %.2f)",
            attempt.iteration, session_id, task_id, attempt.confidence,
        )

    def get_failure_history(self, session_id: str, task_id: str) -> List[AttemptRecord]:
        """All attempts for a task, in the order they were tracked."""
        with self._lock:
            data = self._load(session_id, task_id)
        try:
            return [AttemptRecord.from_dict(a) for a in data["attempts"]]
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerCorruptError(f"Malformed attempt record for {session_id}/{task_id}: {e}")

    def detect_failure_patterns(self, session_id: str, task_id: str) -> List[FailurePattern]:
        return compute_failure_patterns(self.get_failure_history(session_id, task_id))

    def persistent_failures(self, session_id: str, task_id: str, threshold: int) -> List[FailurePattern]:
        return persistent_patterns(self.detect_failure_patterns(session_id, task_id), threshold)

    def clear(self, session_id: str, task_id: str) -> None:
        """Forget a task's history (start a fresh run under the same ids)."""
        path = attempts_path(self.state_dir, session_id, task_id)
        with self._lock:
            if path.exists():
                path.unlink()
