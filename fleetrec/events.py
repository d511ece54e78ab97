from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol


UNIT_CREATED = "unit_created"
UNIT_TERMINATED = "unit_terminated"
UNIT_FAILED = "unit_failed"
ROLLOUT_PHASE = "rollout_phase"
HEALTH_CHANGED = "health_changed"
ROLLOUT_STALLED = "rollout_stalled"
ACTION_FAILED = "action_failed"
RECONCILER_ERROR = "reconciler_error"
CONTROLLER_STARTED = "controller_started"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Event:
    kind: str
    lineage: str | None
    message: str
    level: str = "INFO"
    unit: str | None = None
    version: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class MemorySink:
    """Keeps events in memory. Used by tests and as a ring buffer for the API."""

    def __init__(self, maxlen: int | None = None) -> None:
        self._lock = Lock()
        self._events: list[Event] = []
        self.maxlen = maxlen

    def emit(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
            if self.maxlen is not None and len(self._events) > self.maxlen:
                del self._events[: len(self._events) - self.maxlen]

    def events(self, kind: str | None = None, lineage: str | None = None) -> list[Event]:
        with self._lock:
            return [
                e
                for e in self._events
                if (kind is None or e.kind == kind) and (lineage is None or e.lineage == lineage)
            ]

    def latest(self, limit: int = 100, lineage: str | None = None) -> list[dict[str, Any]]:
        evs = self.events(lineage=lineage)
        return [e.to_dict() for e in reversed(evs[-limit:])] if limit > 0 else []


class FanoutSink:
    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = list(sinks)

    def emit(self, event: Event) -> None:
        for s in self.sinks:
            s.emit(event)
