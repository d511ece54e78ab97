from __future__ import annotations

from threading import Lock
from typing import Callable, Iterable

from .errors import NotFound
from .models import UnitPhase, UnitRecord


class UnitRegistry:
    """In-memory store of unit records.

    Records are immutable; every write replaces the whole record (last writer
    wins per identity). Reads return snapshots, never live views.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._units: dict[str, UnitRecord] = {}

    def upsert(self, record: UnitRecord) -> UnitRecord:
        with self.lock:
            self._units[record.identity] = record
            return record

    def get(self, identity: str) -> UnitRecord:
        with self.lock:
            try:
                return self._units[identity]
            except KeyError:
                raise NotFound(f"unknown unit '{identity}'") from None

    def remove(self, identity: str) -> UnitRecord:
        with self.lock:
            try:
                return self._units.pop(identity)
            except KeyError:
                raise NotFound(f"unknown unit '{identity}'") from None

    def update(self, identity: str, fn: Callable[[UnitRecord], UnitRecord]) -> UnitRecord:
        """Atomically replace a record with fn(record)."""
        with self.lock:
            try:
                cur = self._units[identity]
            except KeyError:
                raise NotFound(f"unknown unit '{identity}'") from None
            new = fn(cur)
            self._units[identity] = new
            return new

    def list(
        self,
        filter: Callable[[UnitRecord], bool] | None = None,
        lineage: str | None = None,
        phases: Iterable[UnitPhase] | None = None,
    ) -> list[UnitRecord]:
        """Snapshot of matching records, oldest first."""
        wanted = set(phases) if phases is not None else None
        with self.lock:
            records = list(self._units.values())
        out = [
            r
            for r in records
            if (lineage is None or r.lineage == lineage)
            and (wanted is None or r.phase in wanted)
            and (filter is None or filter(r))
        ]
        out.sort(key=lambda r: (r.created_at, r.identity))
        return out

    def __len__(self) -> int:
        with self.lock:
            return len(self._units)
