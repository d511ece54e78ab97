from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Protocol, TypeVar

from .errors import ActionFailed
from .models import UnitRecord, UnitTemplate


T = TypeVar("T")


class UnitDriver(Protocol):
    """Execution boundary for create/terminate actions.

    Implementations raise ActionFailed when the action is rejected.
    """

    def create(self, record: UnitRecord, template: UnitTemplate) -> str | None: ...

    def terminate(self, record: UnitRecord) -> None: ...


def call_with_backoff(
    fn: Callable[[], T],
    attempts: int,
    base_s: float,
    max_s: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying ActionFailed with exponential backoff.

    The last ActionFailed propagates once `attempts` calls have failed.
    """
    attempts = max(1, int(attempts))
    delay = max(0.0, base_s)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ActionFailed:
            if attempt == attempts:
                raise
            sleep(delay)
            delay = min(max_s, delay * 2)
    raise AssertionError("unreachable")


class SimulatedDriver:
    """In-memory driver: units exist as soon as they are created.

    `fail_creates` / `fail_terminates` reject that many upcoming calls.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self.units: dict[str, str] = {}  # identity -> version
        self.fail_creates = 0
        self.fail_terminates = 0
        self.calls: list[tuple[str, str]] = []

    def create(self, record: UnitRecord, template: UnitTemplate) -> str | None:
        with self._lock:
            self.calls.append(("create", record.identity))
            if self.fail_creates > 0:
                self.fail_creates -= 1
                raise ActionFailed(f"simulated rejection creating {record.identity}")
            self.units[record.identity] = template.version
            return f"{record.identity}.sim"

    def terminate(self, record: UnitRecord) -> None:
        with self._lock:
            self.calls.append(("terminate", record.identity))
            if self.fail_terminates > 0:
                self.fail_terminates -= 1
                raise ActionFailed(f"simulated rejection terminating {record.identity}")
            self.units.pop(record.identity, None)
