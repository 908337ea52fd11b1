"""In-process event bus for observability.

Events never feed back into decisions. A failing handler is logged and
skipped.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from agentic_reflection.models import utc_now_iso

logger = logging.getLogger(__name__)


REFLECTION_STARTED = "reflectionStarted"
REFLECTION_ITERATION = "reflectionIteration"
REFLECTION_COMPLETED = "reflectionCompleted"
APPROVAL_REQUIRED = "approvalRequired"
CONTEXT_INITIALIZED = "contextInitialized"
CONTEXT_LIMIT_WARNING = "contextLimitWarning"
CONTEXT_SUMMARIZATION_TRIGGERED = "contextSummarizationTriggered"
CONTEXT_SUMMARIZED = "contextSummarized"


@dataclass
class ExecutionEvent:
    type: str
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


EventHandler = Callable[[ExecutionEvent], None]


class EventBus:
    """Fan-out of events to subscribed handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._catch_all: List[EventHandler] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        self._handlers[event_type].append(handler)
        return lambda: self._handlers[event_type].remove(handler)

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        self._catch_all.append(handler)
        return lambda: self._catch_all.remove(handler)

    def emit(self, event_type: str, session_id: str, data: Dict[str, Any]) -> ExecutionEvent:
        event = ExecutionEvent(type=event_type, session_id=session_id, data=dict(data))
        logger.debug("event %s session=%s data=%s", event_type, session_id, data)
        for handler in [*self._handlers.get(event_type, []), *self._catch_all]:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", event_type)
        return event


class EventRecorder:
    """Collects every event it sees. Handy for reports and tests."""

    def __init__(self, bus: EventBus):
        self.events: List[ExecutionEvent] = []
        self._unsubscribe = bus.subscribe_all(self.events.append)

    def of_type(self, event_type: str) -> List[ExecutionEvent]:
        return [e for e in self.events if e.type == event_type]

    def close(self) -> None:
        self._unsubscribe()
