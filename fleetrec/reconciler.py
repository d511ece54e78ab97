from __future__ import annotations

from typing import Iterable

from .models import Action, CreateUnit, DesiredState, TerminateUnit, UnitPhase, UnitRecord


class TerminationPolicy:
    """Decides which units go first when some must be terminated.

    Default order: Failed units, then the oldest units of a non-target
    version, then the oldest overall. Subclass and override `sort_key` to
    change it.
    """

    def sort_key(self, unit: UnitRecord, target_version: str) -> tuple:
        return (
            0 if unit.phase is UnitPhase.FAILED else 1,
            0 if unit.version != target_version else 1,
            unit.created_at,
            unit.identity,
        )

    def order(self, units: Iterable[UnitRecord], target_version: str) -> list[UnitRecord]:
        return sorted(units, key=lambda u: self.sort_key(u, target_version))


default_policy = TerminationPolicy()


def reap_failed(
    units: Iterable[UnitRecord], target_version: str, policy: TerminationPolicy = default_policy
) -> list[Action]:
    failed = [u for u in units if u.phase is UnitPhase.FAILED]
    return [TerminateUnit(u.identity, reason=u.reason or "Failed") for u in policy.order(failed, target_version)]


def select_for_termination(
    candidates: Iterable[UnitRecord],
    count: int,
    available: int,
    min_available: int,
    target_version: str,
    policy: TerminationPolicy = default_policy,
) -> list[UnitRecord]:
    """Pick up to `count` units in policy order.

    An available unit is only picked while the available count stays at or
    above `min_available`; unavailable units can always go.
    """
    picked: list[UnitRecord] = []
    for u in policy.order(candidates, target_version):
        if len(picked) >= count:
            break
        if u.available:
            if available - 1 < min_available:
                continue
            available -= 1
        picked.append(u)
    return picked


def reconcile(
    desired: DesiredState,
    observed: Iterable[UnitRecord],
    policy: TerminationPolicy = default_policy,
) -> list[Action]:
    """Compute the actions that move `observed` toward `desired.replicas`.

    Pure: no I/O, no clock. The caller records the intent of the returned
    actions (Pending / Terminating records) so that a second call over the
    updated registry returns nothing.
    """
    units = [u for u in observed if u.lineage == desired.lineage]
    actions = reap_failed(units, desired.version, policy)

    active = [u for u in units if u.active]
    deficit = desired.replicas - len(active)
    if deficit > 0:
        room = desired.max_total - len(active)
        actions.extend(CreateUnit(desired.version) for _ in range(min(deficit, room)))
    elif deficit < 0:
        available = sum(1 for u in active if u.available)
        victims = select_for_termination(
            active, -deficit, available, desired.min_available, desired.version, policy
        )
        actions.extend(TerminateUnit(u.identity, reason="ScaleDown") for u in victims)
    return actions
