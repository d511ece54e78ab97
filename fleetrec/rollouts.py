from __future__ import annotations

import time
from collections import Counter
from dataclasses import replace
from enum import Enum
from typing import Callable, Iterable

from .errors import InvalidDesiredState, InvalidTransition, NotFound
from .events import ROLLOUT_PHASE, ROLLOUT_STALLED, Event, EventSink
from .models import (
    Action,
    CreateUnit,
    DesiredState,
    RolloutPhase,
    RolloutState,
    TerminateUnit,
    UnitPhase,
    UnitRecord,
    UnitTemplate,
)
from .reconciler import TerminationPolicy, default_policy, reap_failed, reconcile, select_for_termination


class RolloutEvent(str, Enum):
    SUBMIT = "submit"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    ROLLBACK = "rollback"
    REENTER = "reenter"


_TRANSITIONS: dict[RolloutEvent, dict[RolloutPhase, RolloutPhase]] = {
    RolloutEvent.SUBMIT: {p: RolloutPhase.PROGRESSING for p in RolloutPhase},
    RolloutEvent.PAUSE: {RolloutPhase.PROGRESSING: RolloutPhase.PAUSED},
    RolloutEvent.RESUME: {RolloutPhase.PAUSED: RolloutPhase.PROGRESSING},
    RolloutEvent.COMPLETE: {RolloutPhase.PROGRESSING: RolloutPhase.COMPLETED},
    RolloutEvent.ROLLBACK: {
        RolloutPhase.PROGRESSING: RolloutPhase.ROLLED_BACK,
        RolloutPhase.COMPLETED: RolloutPhase.ROLLED_BACK,
    },
    RolloutEvent.REENTER: {RolloutPhase.ROLLED_BACK: RolloutPhase.PROGRESSING},
}


def transition(state: RolloutState, event: RolloutEvent) -> RolloutState:
    """Return a copy of `state` in the phase `event` leads to."""
    try:
        nxt = _TRANSITIONS[event][state.phase]
    except KeyError:
        raise InvalidTransition(f"cannot {event.value} a rollout in phase {state.phase.value}") from None
    return replace(state, phase=nxt)


def rolling_step(
    desired: DesiredState,
    observed: Iterable[UnitRecord],
    policy: TerminationPolicy = default_policy,
) -> list[Action]:
    """One batch of a rolling update toward `desired.version`.

    New units are created while Pending+Running stays within
    replicas + max_surge; old units are terminated while the available count
    stays at or above replicas - max_unavailable.
    """
    units = [u for u in observed if u.lineage == desired.lineage]
    actions = reap_failed(units, desired.version, policy)

    active = [u for u in units if u.active]
    new = [u for u in active if u.version == desired.version]
    old = [u for u in active if u.version != desired.version]
    available = sum(1 for u in active if u.available)

    if len(new) > desired.replicas:
        victims = select_for_termination(
            new, len(new) - desired.replicas, available, desired.min_available, desired.version, policy
        )
        available -= sum(1 for v in victims if v.available)
        actions.extend(TerminateUnit(v.identity, reason="ScaleDown") for v in victims)

    room = desired.max_total - len(active)
    want = desired.replicas - len(new)
    actions.extend(CreateUnit(desired.version) for _ in range(max(0, min(room, want))))

    if old:
        victims = select_for_termination(old, len(old), available, desired.min_available, desired.version, policy)
        actions.extend(TerminateUnit(v.identity, reason="Rollout") for v in victims)
    return actions


def hold_mix(
    desired: DesiredState,
    observed: Iterable[UnitRecord],
    mix: dict[str, int],
    policy: TerminationPolicy = default_policy,
) -> list[Action]:
    """Keep each version at its paused count; never change the version mix."""
    units = [u for u in observed if u.lineage == desired.lineage]
    actions = reap_failed(units, desired.version, policy)
    for version, count in sorted(mix.items()):
        group = [u for u in units if u.version == version and u.phase is not UnitPhase.FAILED]
        group_desired = replace(desired, replicas=count, template=replace(desired.template, version=version))
        actions.extend(reconcile(group_desired, group, policy))
    return actions


def pause_mix(desired: DesiredState, observed: Iterable[UnitRecord]) -> dict[str, int]:
    """Per-version counts to hold while paused.

    Units missing at pause time (an old unit terminated before its replacement
    was created, or a Failed unit) are owed to the target version, so the
    lineage keeps `replicas` units. The total never exceeds replicas + max_surge;
    any excess is taken from old versions first.
    """
    mix = Counter(u.version for u in observed if u.lineage == desired.lineage and u.active)
    shortfall = desired.replicas - sum(mix.values())
    if shortfall > 0:
        mix[desired.version] += shortfall
    excess = sum(mix.values()) - desired.max_total
    for version in sorted(mix, key=lambda v: v == desired.version):
        if excess <= 0:
            break
        take = min(excess, mix[version])
        mix[version] -= take
        excess -= take
    return dict(mix)


class RolloutController:
    """Owns the RolloutState of one lineage and plans its actions.

    Not thread-safe on its own; LineageController serializes access.
    """

    def __init__(
        self,
        lineage: str,
        sink: EventSink,
        clock: Callable[[], float] = time.time,
        policy: TerminationPolicy = default_policy,
    ):
        self.lineage = lineage
        self.sink = sink
        self.clock = clock
        self.policy = policy
        self.state = RolloutState(lineage=lineage, updated_at=clock())
        self.desired: DesiredState | None = None
        self._revisions: dict[int, UnitTemplate] = {}
        self._mix: dict[str, int] = {}
        self._last_progress_at = clock()
        self._last_ready = 0

    # --- bookkeeping ---

    def history(self) -> list[tuple[int, UnitTemplate]]:
        return sorted(self._revisions.items())

    def template_for(self, version: str) -> UnitTemplate | None:
        for _, tpl in sorted(self._revisions.items(), reverse=True):
            if tpl.version == version:
                return tpl
        return None

    def _apply(self, event: RolloutEvent, **changes) -> None:
        prev = self.state.phase
        st = transition(self.state, event)
        self.state = replace(st, updated_at=self.clock(), **changes)
        self.sink.emit(
            Event(
                ROLLOUT_PHASE,
                self.lineage,
                f"Rollout {prev.value} -> {self.state.phase.value} ({event.value})",
                version=self.state.target_version,
                data={"from": prev.value, "to": self.state.phase.value, "revision": self.state.revision},
            )
        )

    def _reset_progress(self) -> None:
        self._last_progress_at = self.clock()
        self._last_ready = 0

    def mark_stalled(self, reason: str) -> None:
        if self.state.stalled and self.state.reason == reason:
            return
        self.state = replace(self.state, stalled=True, reason=reason, updated_at=self.clock())
        self.sink.emit(
            Event(ROLLOUT_STALLED, self.lineage, reason, level="WARN", version=self.state.target_version)
        )

    # --- commands ---

    def submit(self, desired: DesiredState) -> RolloutState:
        desired.validate()
        if desired.lineage != self.lineage:
            raise InvalidDesiredState(f"desired state belongs to '{desired.lineage}', not '{self.lineage}'")

        same_template = self.desired is not None and desired.version == self.state.target_version
        if same_template and self.state.phase is RolloutPhase.COMPLETED:
            # Settled lineage, same version: only rescale.
            self._revisions[self.state.revision] = desired.template
            self.desired = desired
            self.state = replace(self.state, replicas=desired.replicas, updated_at=self.clock())
            return self.state

        if same_template:
            rev = self.state.revision
        else:
            rev = max(self._revisions, default=0) + 1
        self._revisions[rev] = desired.template
        self.desired = desired
        self._mix = {}
        self._reset_progress()
        self._apply(
            RolloutEvent.SUBMIT,
            target_version=desired.version,
            revision=rev,
            replicas=desired.replicas,
            stalled=False,
            reason="",
        )
        return self.state

    def pause(self, observed: Iterable[UnitRecord]) -> RolloutState:
        self._apply(RolloutEvent.PAUSE)
        self._mix = pause_mix(self.desired, observed)
        return self.state

    def resume(self) -> RolloutState:
        self._apply(RolloutEvent.RESUME, stalled=False, reason="")
        self._mix = {}
        self._reset_progress()
        return self.state

    def rollback(self, revision: int | None = None) -> RolloutState:
        if self.desired is None:
            raise InvalidTransition("nothing to roll back")
        if revision is None:
            older = [r for r in self._revisions if r < self.state.revision]
            if not older:
                raise InvalidTransition("no previous revision to roll back to")
            revision = max(older)
        try:
            template = self._revisions[revision]
        except KeyError:
            raise NotFound(f"unknown revision {revision}") from None

        rev = max(self._revisions) + 1
        self._apply(
            RolloutEvent.ROLLBACK,
            target_version=template.version,
            revision=rev,
            stalled=False,
            reason=f"Rolled back to revision {revision}",
        )
        self._revisions[rev] = template
        self.desired = replace(self.desired, template=template)
        self._reset_progress()
        self._apply(RolloutEvent.REENTER)
        return self.state

    # --- control loop hooks ---

    def observe(self, observed: Iterable[UnitRecord]) -> RolloutState:
        """Refresh progress counters; detect completion and stalls."""
        if self.desired is None:
            return self.state
        now = self.clock()
        target = self.state.target_version
        active = [u for u in observed if u.lineage == self.lineage and u.active]
        new = [u for u in active if u.version == target]
        ready_new = sum(1 for u in new if u.available)
        self.state = replace(
            self.state,
            updated=len(new),
            ready_updated=ready_new,
            total=len(active),
            available=sum(1 for u in active if u.available),
        )

        # Any rise in ready new units is progress, including a replacement for a lost one.
        if ready_new > self._last_ready:
            self._last_progress_at = now
            if self.state.stalled and self.state.reason.startswith("ProgressDeadlineExceeded"):
                self.state = replace(self.state, stalled=False, reason="")
        self._last_ready = ready_new

        if self.state.phase is not RolloutPhase.PROGRESSING:
            return self.state

        replicas = self.desired.replicas
        if len(new) == len(active) == ready_new == replicas:
            self._apply(RolloutEvent.COMPLETE, current_version=target, stalled=False, reason="")
        elif not self.state.stalled and now - self._last_progress_at > self.desired.progress_deadline_s:
            self.mark_stalled(
                f"ProgressDeadlineExceeded: {ready_new}/{replicas} units of {target} ready "
                f"after {self.desired.progress_deadline_s:g}s"
            )
        return self.state

    def plan(self, observed: Iterable[UnitRecord]) -> list[Action]:
        if self.desired is None:
            return []
        phase = self.state.phase
        if phase is RolloutPhase.PAUSED:
            return hold_mix(self.desired, observed, self._mix, self.policy)
        if phase is RolloutPhase.PROGRESSING:
            if self.state.stalled:
                return []
            return rolling_step(self.desired, observed, self.policy)
        return reconcile(self.desired, observed, self.policy)
