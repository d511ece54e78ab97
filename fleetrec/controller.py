from __future__ import annotations

import secrets
import time
from dataclasses import replace
from functools import partial
from threading import Event as StopFlag
from threading import Lock, Thread
from typing import Callable

from .drivers import UnitDriver, call_with_backoff
from .errors import ActionFailed, NotFound
from .events import (
    ACTION_FAILED,
    CONTROLLER_STARTED,
    HEALTH_CHANGED,
    RECONCILER_ERROR,
    UNIT_CREATED,
    UNIT_FAILED,
    UNIT_TERMINATED,
    Event,
    EventSink,
)
from .health import HealthEvaluator
from .models import (
    Action,
    CreateUnit,
    DesiredState,
    HealthStatus,
    Liveness,
    ProbeConfig,
    RolloutState,
    TerminateUnit,
    UnitPhase,
    UnitRecord,
    UnitTemplate,
)
from .reconciler import TerminationPolicy, default_policy
from .registry import UnitRegistry
from .rollouts import RolloutController
from .settings import Settings, settings as default_settings


def _spawn_thread(fn: Callable[[], None]) -> None:
    Thread(target=fn, daemon=True).start()


class LineageController:
    """Serialized reconciliation loop for one lineage.

    Each `sync()` probes Running units, merges health into the registry,
    lets the rollout controller plan, records the intent of every action in
    the registry and hands it to the driver without waiting for it.
    """

    def __init__(
        self,
        lineage: str,
        registry: UnitRegistry,
        evaluator: HealthEvaluator,
        driver: UnitDriver,
        sink: EventSink,
        clock: Callable[[], float] = time.time,
        policy: TerminationPolicy = default_policy,
        spawn: Callable[[Callable[[], None]], None] = _spawn_thread,
        sleep: Callable[[float], None] = time.sleep,
        cfg: Settings = default_settings,
    ):
        self.lineage = lineage
        self.registry = registry
        self.evaluator = evaluator
        self.driver = driver
        self.sink = sink
        self.clock = clock
        self.spawn = spawn
        self.sleep = sleep
        self.cfg = cfg
        self.rollout = RolloutController(lineage, sink, clock=clock, policy=policy)
        self._lock = Lock()  # rollout state + generation
        self._sync_lock = Lock()  # at most one in-flight sync
        self._generation = 0
        self._stop = StopFlag()
        self._thr: Thread | None = None

    # --- commands (each supersedes whatever a running sync planned) ---

    def submit(self, desired: DesiredState) -> RolloutState:
        with self._lock:
            st = self.rollout.submit(desired)
            self._generation += 1
            return replace(st)

    def pause(self) -> RolloutState:
        with self._lock:
            st = self.rollout.pause(self.registry.list(lineage=self.lineage))
            self._generation += 1
            return replace(st)

    def resume(self) -> RolloutState:
        with self._lock:
            st = self.rollout.resume()
            self._generation += 1
            return replace(st)

    def rollback(self, revision: int | None = None) -> RolloutState:
        with self._lock:
            st = self.rollout.rollback(revision)
            self._generation += 1
            return replace(st)

    def state(self) -> RolloutState:
        with self._lock:
            return replace(self.rollout.state)

    def desired(self) -> DesiredState | None:
        with self._lock:
            return self.rollout.desired

    def history(self) -> list[tuple[int, UnitTemplate]]:
        with self._lock:
            return self.rollout.history()

    def plan(self) -> list[Action]:
        """Dry run: what the next sync would do, without doing it."""
        with self._lock:
            return self.rollout.plan(self.registry.list(lineage=self.lineage))

    # --- loop ---

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name=f"lineage-{self.lineage}")
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        self._emit(CONTROLLER_STARTED, "Lineage controller started")
        while not self._stop.is_set():
            try:
                self.sync()
            except Exception as e:
                self._emit(RECONCILER_ERROR, f"Reconcile cycle failed: {type(e).__name__}: {e}", level="ERROR")
            self._stop.wait(max(0.1, self.cfg.poll_interval_s))

    def sync(self) -> list[Action]:
        """Run one reconciliation cycle. Returns the actions dispatched."""
        with self._sync_lock:
            self._probe()
            with self._lock:
                units = self.registry.list(lineage=self.lineage)
                self.rollout.observe(units)
                actions = self.rollout.plan(units)
                gen = self._generation
            return self._dispatch(actions, gen)

    # --- health ---

    def _probe(self) -> None:
        running = self.registry.list(lineage=self.lineage, phases=[UnitPhase.RUNNING])
        if not running:
            return
        with self._lock:
            probes: dict[str, ProbeConfig] = {}
            for u in running:
                if u.version not in probes:
                    tpl = self.rollout.template_for(u.version)
                    probes[u.version] = tpl.probes if tpl else ProbeConfig()
        statuses = self.evaluator.evaluate_many(running, lambda r: probes[r.version], now=self.clock())
        for unit in running:
            self._merge_health(unit, statuses[unit.identity])

    def _merge_health(self, unit: UnitRecord, status: HealthStatus) -> None:
        def apply(r: UnitRecord) -> UnitRecord:
            if r.phase is not UnitPhase.RUNNING:
                return r
            if status.failed_to_start:
                return replace(r, health=status, phase=UnitPhase.FAILED, reason="FailedToStart")
            if status.liveness is Liveness.DEAD:
                return replace(r, health=status, phase=UnitPhase.FAILED, reason="LivenessProbeFailed")
            return replace(r, health=status)

        try:
            new = self.registry.update(unit.identity, apply)
        except NotFound:
            self.evaluator.forget(unit.identity)
            return

        if new.phase is UnitPhase.FAILED and unit.phase is not UnitPhase.FAILED:
            self._emit(UNIT_FAILED, f"{new.reason}: {status.message}", level="ERROR", unit=new)
            return
        prev = unit.health
        if prev is None or prev.readiness != status.readiness or prev.liveness != status.liveness:
            self._emit(
                HEALTH_CHANGED,
                f"{status.liveness.value}/{status.readiness.value}: {status.message}",
                level="INFO" if status.ready else "WARN",
                unit=new,
                data={"liveness": status.liveness.value, "readiness": status.readiness.value},
            )

    # --- actions ---

    def _dispatch(self, actions: list[Action], gen: int) -> list[Action]:
        sent: list[Action] = []
        for a in actions:
            with self._lock:
                if self._generation != gen:
                    # Superseded by a submission, pause or rollback.
                    break
                job = self._record_intent(a)
            if job is None:
                continue
            sent.append(a)
            self.spawn(job)
        return sent

    def _record_intent(self, a: Action) -> Callable[[], None] | None:
        if isinstance(a, CreateUnit):
            template = self.rollout.template_for(a.version)
            if template is None:
                template = replace(self.rollout.desired.template, version=a.version)
            record = UnitRecord(
                identity=f"{self.lineage}-{secrets.token_hex(4)}",
                lineage=self.lineage,
                version=a.version,
                phase=UnitPhase.PENDING,
                created_at=self.clock(),
            )
            self.registry.upsert(record)
            return partial(self._create, record, template)
        if isinstance(a, TerminateUnit):
            try:
                record = self.registry.update(
                    a.identity, lambda r: replace(r, phase=UnitPhase.TERMINATING, reason=a.reason or r.reason)
                )
            except NotFound:
                return None
            return partial(self._terminate, record)
        return None

    def _retry(self, fn: Callable[[], object]) -> object:
        return call_with_backoff(
            fn,
            attempts=self.cfg.action_attempts,
            base_s=self.cfg.action_backoff_s,
            max_s=self.cfg.action_backoff_max_s,
            sleep=self.sleep,
        )

    def _create(self, record: UnitRecord, template: UnitTemplate) -> None:
        try:
            address = self._retry(lambda: self.driver.create(record, template))
        except ActionFailed as e:
            self._discard(record.identity)
            self._action_failed(f"create {record.version} failed: {e}", record)
            return

        def running(r: UnitRecord) -> UnitRecord:
            if r.phase is not UnitPhase.PENDING:
                return r
            return replace(r, phase=UnitPhase.RUNNING, address=address)

        try:
            current = self.registry.update(record.identity, running)
        except NotFound:
            # Removed while the create was in flight; do not leave an orphan behind.
            self._terminate(replace(record, phase=UnitPhase.TERMINATING))
            return
        if current.phase is UnitPhase.TERMINATING:
            # A terminate raced the create and may have reached the driver first.
            self._terminate(current)
            return
        self._emit(UNIT_CREATED, f"Started unit {record.identity}", unit=record)

    def _terminate(self, record: UnitRecord) -> None:
        try:
            self._retry(lambda: self.driver.terminate(record))
        except ActionFailed as e:
            try:
                self.registry.update(
                    record.identity, lambda r: replace(r, phase=UnitPhase.FAILED, reason="TerminateFailed")
                )
            except NotFound:
                pass  # already gone
            self._action_failed(f"terminate {record.identity} failed: {e}", record)
            return
        self._discard(record.identity)
        self._emit(UNIT_TERMINATED, f"Terminated unit {record.identity} ({record.reason or 'requested'})", unit=record)

    def _discard(self, identity: str) -> None:
        self.evaluator.forget(identity)
        try:
            self.registry.remove(identity)
        except NotFound:
            pass  # already gone

    def _action_failed(self, message: str, record: UnitRecord) -> None:
        self._emit(ACTION_FAILED, message, level="ERROR", unit=record)
        with self._lock:
            self.rollout.mark_stalled(f"ActionFailed: {message}")

    def _emit(
        self,
        kind: str,
        message: str,
        level: str = "INFO",
        unit: UnitRecord | None = None,
        data: dict | None = None,
    ) -> None:
        self.sink.emit(
            Event(
                kind,
                self.lineage,
                message,
                level=level,
                unit=unit.identity if unit else None,
                version=unit.version if unit else None,
                data=data or {},
            )
        )
