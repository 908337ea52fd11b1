"""Token-budgeted conversational window for one session.

Entries accumulate until the estimated token count crosses the
summarization threshold. At that point everything except the most recent
entries is collapsed into a single summary entry. This happens at most once
per session; the flag is persisted with the history so a reload does not
re-arm it.
"""

import logging
import math
import re
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from agentic_reflection.config import ContextLimits
from agentic_reflection.events import (
    CONTEXT_INITIALIZED,
    CONTEXT_LIMIT_WARNING,
    CONTEXT_SUMMARIZATION_TRIGGERED,
    CONTEXT_SUMMARIZED,
    EventBus,
)
from agentic_reflection.models import ContextEntry, SummaryResult, utc_now_iso
from agentic_reflection.storage import (
    history_path,
    read_json,
    summary_path,
    write_json_atomic,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
MAX_TOPICS = 10

TOPIC_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"test(?:ing|s)?",
        r"implement(?:ation|ed)?",
        r"fix(?:ed)?",
        r"bug",
        r"feature",
        r"build",
        r"error",
        r"refactor",
        r"task(?:s)?",
    )
]


def estimate_tokens(content: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(content) / CHARS_PER_TOKEN)


class ContextWindow:
    """Bounded conversation history for one session."""

    def __init__(
        self,
        state_dir: Path,
        session_id: str,
        limits: Optional[ContextLimits] = None,
        events: Optional[EventBus] = None,
    ):
        self.state_dir = Path(state_dir)
        self.session_id = session_id
        self.limits = limits or ContextLimits()
        self.events = events or EventBus()
        self._lock = threading.Lock()
        self._entries: List[ContextEntry] = []
        self._total_tokens = 0
        self._summarized = False
        self._load()
        self.events.emit(CONTEXT_INITIALIZED, session_id, {
            "token_count": self._total_tokens,
            "entry_count": len(self._entries),
        })

    # --- Public API ---

    @property
    def entries(self) -> List[ContextEntry]:
        return list(self._entries)

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def summarized(self) -> bool:
        return self._summarized

    def usage_percentage(self) -> float:
        return self._total_tokens / self.limits.max_total_tokens * 100

    def add_entry(
        self,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ContextEntry:
        """Append an entry, then apply the warning/summarization policy."""
        entry = ContextEntry(
            role=role,
            content=content,
            token_estimate=estimate_tokens(content),
            timestamp=utc_now_iso(),
            session_id=self.session_id,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._entries.append(entry)
            self._total_tokens += entry.token_estimate
            self._check_limits()
            self._save()
        return entry

    def force_summarize(self) -> SummaryResult:
        """
        Collapse older entries into a summary now, regardless of usage.

        Raises:
            ValueError: If there are no entries beyond the retained tail.
        """
        with self._lock:
            summary = self._summarize()
            self._save()
        return summary

    def stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_tokens": self._total_tokens,
            "max_tokens": self.limits.max_total_tokens,
            "usage_percentage": self.usage_percentage(),
            "entry_count": len(self._entries),
            "summarized": self._summarized,
        }

    # --- Limits ---

    def _check_limits(self) -> None:
        usage = self.usage_percentage()

        if usage >= self.limits.summarization_threshold and not self._summarized:
            self._trigger_summarization(usage)
        elif usage >= self.limits.warning_threshold:
            message = (
                f"Context usage at {usage:.1f}%. Summarization will be triggered "
                f"at {self.limits.summarization_threshold}%."
            )
            logger.warning("[%s] %s", self.session_id, message)
            self.events.emit(CONTEXT_LIMIT_WARNING, self.session_id, {
                "current_tokens": self._total_tokens,
                "max_tokens": self.limits.max_total_tokens,
                "usage_percentage": usage,
                "message": message,
            })

    def _trigger_summarization(self, usage: float) -> None:
        if len(self._entries) < self.limits.min_entries_before_summarization:
            logger.debug(
                "Summarization deferred: %d entries < minimum %d",
                len(self._entries), self.limits.min_entries_before_summarization,
            )
            return
        if len(self._entries) <= self.limits.retain_recent_entries:
            return

        self.events.emit(CONTEXT_SUMMARIZATION_TRIGGERED, self.session_id, {
            "current_tokens": self._total_tokens,
            "max_tokens": self.limits.max_total_tokens,
            "usage_percentage": usage,
        })

        summary = self._summarize()
        self._summarized = True
        logger.info(
            "[%s] Summarized %d entries (%d -> %d tokens)",
            self.session_id, summary.entries_summarized,
            summary.original_token_count, summary.summary_token_count,
        )

    def _summarize(self) -> SummaryResult:
        retain = self.limits.retain_recent_entries
        to_summarize = len(self._entries) - retain
        if to_summarize <= 0:
            raise ValueError("Not enough entries to summarize")

        old_entries = self._entries[:to_summarize]
        recent_entries = self._entries[to_summarize:]
        original_tokens = sum(e.token_estimate for e in old_entries)

        summary_text = build_summary_text(old_entries)
        summary_entry = ContextEntry(
            role="system",
            content=summary_text,
            token_estimate=estimate_tokens(summary_text),
            timestamp=utc_now_iso(),
            session_id=self.session_id,
            metadata={
                "is_summary": True,
                "entries_summarized": len(old_entries),
                "original_token_count": original_tokens,
            },
        )

        self._entries = [summary_entry, *recent_entries]
        self._total_tokens = summary_entry.token_estimate + sum(
            e.token_estimate for e in recent_entries
        )
        write_text_atomic(summary_path(self.state_dir, self.session_id), summary_text)

        result = SummaryResult(
            summary_text=summary_text,
            original_token_count=original_tokens,
            summary_token_count=summary_entry.token_estimate,
            entries_summarized=len(old_entries),
            retained_entries=len(recent_entries),
        )
        self.events.emit(CONTEXT_SUMMARIZED, self.session_id, {
            "original_tokens": result.original_token_count,
            "summary_tokens": result.summary_token_count,
            "tokens_saved": result.original_token_count - result.summary_token_count,
            "entries_summarized": result.entries_summarized,
            "retained_entries": result.retained_entries,
        })
        return result

    # --- Persistence ---

    def _save(self) -> None:
        write_json_atomic(history_path(self.state_dir, self.session_id), {
            "session_id": self.session_id,
            "total_tokens": self._total_tokens,
            "entry_count": len(self._entries),
            "summarized": self._summarized,
            "last_updated": utc_now_iso(),
            "entries": [e.to_dict() for e in self._entries],
        })

    def _load(self) -> None:
        data = read_json(history_path(self.state_dir, self.session_id), default=None)
        if not data:
            return
        self._entries = [ContextEntry.from_dict(e) for e in data.get("entries", [])]
        self._total_tokens = sum(e.token_estimate for e in self._entries)
        self._summarized = bool(data.get("summarized", False))


def extract_key_topics(entries: List[ContextEntry]) -> List[str]:
    topics: List[str] = []
    for entry in entries:
        if entry.role != "user":
            continue
        for pattern in TOPIC_PATTERNS:
            match = pattern.search(entry.content)
            if match and match.group(0).lower() not in topics:
                topics.append(match.group(0).lower())
    return topics[:MAX_TOPICS]


def build_summary_text(entries: List[ContextEntry]) -> str:
    """Deterministic markdown digest of the collapsed entries."""
    roles = Counter(e.role for e in entries)
    first = entries[0].timestamp if entries else "unknown"
    last = entries[-1].timestamp if entries else "unknown"

    lines = [
        "# Conversation Summary",
        "",
        f"Covers {len(entries)} earlier messages from {first} to {last}.",
        "",
        "## Overview",
        f"- User requests: {roles.get('user', 0)}",
        f"- Assistant responses: {roles.get('assistant', 0)}",
        f"- Tool executions: {roles.get('tool', 0)}",
        "",
    ]

    topics = extract_key_topics(entries)
    if topics:
        lines.append("## Key Topics")
        lines.extend(f"- {t}" for t in topics)
        lines.append("")

    lines.append("Recent messages are preserved in full.")
    return "\n".join(lines)
