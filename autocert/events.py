"""
Structured lifecycle events.

Every provisioning stage, renewal check and sweep reports a
``CertEvent`` to the registered sinks. Emission is fire-and-forget:
a failing sink is logged and skipped, never propagated to the caller.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


logger = logging.getLogger(__name__)


@dataclass
class CertEvent:
    """A single certificate lifecycle event."""

    component: str
    stage: str
    outcome: str
    duration_ms: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "stage": self.stage,
            "outcome": self.outcome,
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }


EventSink = Callable[[CertEvent], None]


def logging_sink(event: CertEvent) -> None:
    """Default sink: write the event to the debug log."""
    logger.debug(
        "[EVENTS] %s.%s %s (%s ms) %s",
        event.component,
        event.stage,
        event.outcome,
        event.duration_ms,
        event.metadata,
    )


def elapsed_ms(started_at: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started_at) * 1000)


class EventEmitter:
    """Fans events out to a list of sinks."""

    def __init__(self, sinks: Optional[list[EventSink]] = None):
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else [logging_sink]

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def emit(
        self,
        component: str,
        stage: str,
        outcome: str,
        duration_ms: Optional[int] = None,
        **metadata: Any,
    ) -> None:
        """
        Emit an event to every sink.

        Args:
            component: Emitting component (e.g. "acme_client")
            stage: Stage within the component (e.g. "challenge")
            outcome: Result tag (e.g. "success", "failure", "disabled")
            duration_ms: Optional stage duration
            **metadata: Free-form context such as the domain
        """
        event = CertEvent(
            component=component,
            stage=stage,
            outcome=outcome,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        for sink in list(self._sinks):
            try:
                sink(event)
            except Exception as e:
                logger.debug("[EVENTS] Suppressed sink error for %s.%s: %s", component, stage, e)

    def cert_status(self, expiring: int, total: int, **metadata: Any) -> None:
        """Emit the aggregate certificate status after a sweep."""
        self.emit("cert_status", "status", "reported", None, expiring=expiring, total=total, **metadata)


# Global emitter instance
_emitter = EventEmitter()


def get_event_emitter() -> EventEmitter:
    """Get the global event emitter."""
    return _emitter
