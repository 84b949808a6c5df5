"""In-process event stream for governance observers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .redaction import redact_text
from .telemetry import TelemetrySink


class EventType(str, Enum):
    SIGNAL_DETECTED = "signal_detected"
    PROPOSAL_GENERATED = "proposal_generated"
    PROPOSAL_APPROVED = "proposal_approved"
    PROPOSAL_REJECTED = "proposal_rejected"
    PROPOSAL_APPLIED = "proposal_applied"
    PROPOSAL_FAILED = "proposal_failed"
    PROPOSAL_ROLLED_BACK = "proposal_rolled_back"
    APPLICATION_ROLLED_BACK = "application_rolled_back"
    CYCLE_COMPLETE = "cycle_complete"
    ERROR = "error"

    COUNCIL_EXECUTION_STARTED = "council_execution_started"
    COUNCIL_AGENT_STARTED = "council_agent_started"
    COUNCIL_AGENT_COMPLETED = "council_agent_completed"
    COUNCIL_AGENT_FAILED = "council_agent_failed"
    COUNCIL_EXECUTION_COMPLETED = "council_execution_completed"
    COUNCIL_EXECUTION_FAILED = "council_execution_failed"


class CouncilEventType(str, Enum):
    """Events raised by the multi-agent council during one review."""

    EXECUTION_STARTED = "execution_started"
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"


# Multi-agent council events are re-published on the governance stream under these names.
COUNCIL_EVENT_FORWARDING: dict[CouncilEventType, EventType] = {
    CouncilEventType.EXECUTION_STARTED: EventType.COUNCIL_EXECUTION_STARTED,
    CouncilEventType.AGENT_STARTED: EventType.COUNCIL_AGENT_STARTED,
    CouncilEventType.AGENT_COMPLETED: EventType.COUNCIL_AGENT_COMPLETED,
    CouncilEventType.AGENT_FAILED: EventType.COUNCIL_AGENT_FAILED,
    CouncilEventType.EXECUTION_COMPLETED: EventType.COUNCIL_EXECUTION_COMPLETED,
    CouncilEventType.EXECUTION_FAILED: EventType.COUNCIL_EXECUTION_FAILED,
}


@dataclass
class GovernanceEvent:
    type: EventType | CouncilEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Listener = Callable[[GovernanceEvent], None]


class EventBus:
    """Fan-out to registered listeners.

    A listener that raises is logged to telemetry and skipped; the remaining
    listeners still receive the event.
    """

    def __init__(self, telemetry: TelemetrySink | None = None, source: str = "events"):
        self._listeners: list[Listener] = []
        self._telemetry = telemetry or TelemetrySink.disabled()
        self._source = source

    def on(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: EventType | CouncilEventType, data: dict[str, Any] | None = None) -> GovernanceEvent:
        event = GovernanceEvent(type=event_type, data=data or {})
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self._telemetry.log(
                    self._source,
                    "listener_error",
                    {"event_type": event_type.value, "error": redact_text(str(e), max_len=200)},
                )
        return event

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
