"""Failure taxonomy, transient/strategic classification and backoff."""

import random
from enum import Enum
from typing import Iterable, Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    STRATEGIC = "strategic"
    APPROVAL_DENIED = "approval_denied"
    QUOTA_EXCEEDED = "quota_exceeded"
    PLANNER_FAILURE = "planner_failure"
    PERSISTENT_FAILURE = "persistent_failure"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


class ReflectionError(Exception):
    """Base class for errors raised by the reflection core."""
    kind: ErrorKind = ErrorKind.STRATEGIC


class PlannerError(ReflectionError):
    """Raised when a planner cannot produce usable actions."""
    kind = ErrorKind.PLANNER_FAILURE


class ApprovalDeniedError(ReflectionError):
    """Raised when a destructive action is rejected."""
    kind = ErrorKind.APPROVAL_DENIED


class QuotaExceededError(ReflectionError):
    """Raised when the file modification quota is used up."""
    kind = ErrorKind.QUOTA_EXCEEDED


class LedgerCorruptError(ReflectionError):
    """Raised when a persisted ledger or history document cannot be parsed."""
    pass


# Substrings (lower-cased) that mark a failure as worth retrying as-is
NETWORK_MARKERS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "enetunreach",
    "ehostunreach",
    "etimedout",
)
LOCK_MARKERS = ("ebusy", "locked", "file is in use")
RESOURCE_MARKERS = ("eagain", "ewouldblock", "resource temporarily unavailable")
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")

TRANSIENT_MARKERS = NETWORK_MARKERS + LOCK_MARKERS + RESOURCE_MARKERS + RATE_LIMIT_MARKERS

# 130 = SIGINT, 137 = SIGKILL, 143 = SIGTERM
DEFAULT_TRANSIENT_EXIT_CODES = frozenset({130, 137, 143})


def classify_failure(
    exit_code: Optional[int] = None,
    message: Optional[str] = None,
    transient_exit_codes: Iterable[int] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> ErrorKind:
    """
    Classify a failed action as TRANSIENT or STRATEGIC.

    Transient failures are retried by the executor without re-planning.
    Anything not recognised is strategic and goes back to the planner.
    """
    if message:
        lowered = message.lower()
        if any(marker in lowered for marker in TRANSIENT_MARKERS):
            return ErrorKind.TRANSIENT

    if exit_code is not None and exit_code in set(transient_exit_codes):
        return ErrorKind.TRANSIENT

    return ErrorKind.STRATEGIC


def backoff_delay_ms(
    attempt: int,
    initial_delay_ms: float,
    backoff_multiplier: float,
    max_delay_ms: float,
    jitter: bool = False,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    delay = min(initial * multiplier^(attempt-1), max). With jitter, a
    uniformly random value in [delay/2, delay] is returned instead.
    """
    if attempt < 1:
        return 0.0
    delay = min(initial_delay_ms * (backoff_multiplier ** (attempt - 1)), max_delay_ms)
    if jitter:
        rng = rng or random
        delay = rng.uniform(delay / 2, delay)
    return delay
