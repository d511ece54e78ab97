from __future__ import annotations

import time
from threading import Lock
from typing import Any, Callable

from .alerts import EmailAlertSink
from .controller import LineageController, _spawn_thread
from .db import SqliteEventSink
from .docker_ops import DockerDriver
from .drivers import SimulatedDriver, UnitDriver
from .errors import NotFound, StalledRollout
from .events import EventSink, FanoutSink, MemorySink
from .health import HealthEvaluator
from .models import Action, DesiredState, RolloutPhase, RolloutState, UnitRecord, UnitTemplate
from .reconciler import TerminationPolicy, default_policy
from .registry import UnitRegistry
from .settings import Settings, settings as default_settings


def build_driver(cfg: Settings = default_settings) -> UnitDriver:
    if cfg.driver == "docker":
        return DockerDriver(network=cfg.docker_network)
    return SimulatedDriver()


class Orchestrator:
    """Orchestration API surface: one LineageController per lineage.

    All collaborators are injected; the defaults come from settings.
    `event_log` must be readable (`latest(limit, lineage)`), every event also
    goes to the email alert sink and to `extra_sinks`.
    """

    def __init__(
        self,
        registry: UnitRegistry | None = None,
        evaluator: HealthEvaluator | None = None,
        driver: UnitDriver | None = None,
        event_log: SqliteEventSink | MemorySink | None = None,
        extra_sinks: tuple[EventSink, ...] = (),
        clock: Callable[[], float] = time.time,
        policy: TerminationPolicy = default_policy,
        spawn: Callable[[Callable[[], None]], None] = _spawn_thread,
        sleep: Callable[[float], None] = time.sleep,
        cfg: Settings = default_settings,
    ):
        self.cfg = cfg
        self.clock = clock
        self.policy = policy
        self.spawn = spawn
        self.sleep = sleep
        self.registry = registry if registry is not None else UnitRegistry()
        self.evaluator = evaluator if evaluator is not None else HealthEvaluator(clock=clock, workers=cfg.probe_workers)
        self.driver = driver if driver is not None else build_driver(cfg)
        self.event_log = event_log if event_log is not None else SqliteEventSink(cfg.db_path)
        self.sink = FanoutSink(self.event_log, EmailAlertSink(cfg), *extra_sinks)
        self._lock = Lock()
        self._lineages: dict[str, LineageController] = {}
        self._running = False

    def _controller(self, lineage: str) -> LineageController:
        with self._lock:
            try:
                return self._lineages[lineage]
            except KeyError:
                raise NotFound(f"unknown lineage '{lineage}'") from None

    # --- commands ---

    def submit(self, desired: DesiredState) -> RolloutState:
        """Validate and apply a desired state. InvalidDesiredState is raised synchronously."""
        desired.validate()
        with self._lock:
            ctl = self._lineages.get(desired.lineage)
            if ctl is None:
                ctl = LineageController(
                    desired.lineage,
                    self.registry,
                    self.evaluator,
                    self.driver,
                    self.sink,
                    clock=self.clock,
                    policy=self.policy,
                    spawn=self.spawn,
                    sleep=self.sleep,
                    cfg=self.cfg,
                )
                self._lineages[desired.lineage] = ctl
                if self._running:
                    ctl.start()
        return ctl.submit(desired)

    def pause(self, lineage: str) -> RolloutState:
        return self._controller(lineage).pause()

    def resume(self, lineage: str) -> RolloutState:
        return self._controller(lineage).resume()

    def rollback(self, lineage: str, revision: int | None = None) -> RolloutState:
        return self._controller(lineage).rollback(revision)

    # --- queries ---

    def lineages(self) -> list[str]:
        with self._lock:
            return sorted(self._lineages)

    def rollout_state(self, lineage: str) -> RolloutState:
        return self._controller(lineage).state()

    def desired(self, lineage: str) -> DesiredState | None:
        return self._controller(lineage).desired()

    def units(self, lineage: str) -> list[UnitRecord]:
        self._controller(lineage)
        return self.registry.list(lineage=lineage)

    def history(self, lineage: str) -> list[tuple[int, UnitTemplate]]:
        return self._controller(lineage).history()

    def plan(self, lineage: str) -> list[Action]:
        return self._controller(lineage).plan()

    def events(self, limit: int = 100, lineage: str | None = None) -> list[dict[str, Any]]:
        return self.event_log.latest(limit=limit, lineage=lineage)

    def driver_available(self) -> bool:
        check = getattr(self.driver, "available", None)
        return bool(check()) if callable(check) else True

    # --- loop ---

    def sync_all(self) -> dict[str, list[Action]]:
        with self._lock:
            ctls = list(self._lineages.values())
        return {c.lineage: c.sync() for c in ctls}

    def wait_for_rollout(self, lineage: str, timeout_s: float = 300.0, poll_s: float = 1.0) -> RolloutState:
        """Block until the rollout completes.

        Raises StalledRollout when it stalls, TimeoutError when it does not
        finish within `timeout_s`.
        """
        t0 = time.monotonic()
        while True:
            st = self.rollout_state(lineage)
            if st.phase is RolloutPhase.COMPLETED:
                return st
            if st.stalled and st.phase is RolloutPhase.PROGRESSING:
                raise StalledRollout(lineage, st.reason)
            if time.monotonic() - t0 >= timeout_s:
                raise TimeoutError(f"rollout of '{lineage}' still {st.phase.value} after {timeout_s:g}s")
            self.sleep(poll_s)

    def start(self) -> None:
        with self._lock:
            self._running = True
            ctls = list(self._lineages.values())
        for c in ctls:
            c.start()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            ctls = list(self._lineages.values())
        for c in ctls:
            c.stop()
