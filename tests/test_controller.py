import threading
import time
from collections import Counter
from dataclasses import replace

import pytest

from conftest import desired_state

from fleetrec.drivers import SimulatedDriver
from fleetrec.errors import StalledRollout
from fleetrec.events import (
    ACTION_FAILED,
    HEALTH_CHANGED,
    RECONCILER_ERROR,
    UNIT_CREATED,
    UNIT_FAILED,
    UNIT_TERMINATED,
    MemorySink,
)
from fleetrec.health import HealthEvaluator
from fleetrec.models import (
    CreateUnit,
    Exec,
    Probe,
    ProbeConfig,
    RolloutPhase,
    TcpSocket,
    TerminateUnit,
    UnitPhase,
)
from fleetrec.orchestrator import Orchestrator
from fleetrec.registry import UnitRegistry
from fleetrec.settings import Settings


def sync(orch, clock, lineage="web"):
    clock.advance(1)
    return orch.sync_all().get(lineage, [])


def converge(orch, clock, lineage="web", limit=30):
    """Sync until the rollout completes; return the actions of every cycle."""
    cycles = []
    for _ in range(limit):
        if orch.rollout_state(lineage).phase is RolloutPhase.COMPLETED:
            return cycles
        cycles.append(sync(orch, clock, lineage))
    raise AssertionError(f"rollout did not complete: {orch.rollout_state(lineage)}")


def versions(orch, lineage="web"):
    return Counter(u.version for u in orch.units(lineage) if u.active)


def test_converges_to_exact_replica_count(orchestrator, clock, sink):
    orchestrator.submit(desired_state(version="v1", replicas=3))
    converge(orchestrator, clock)

    units = orchestrator.units("web")
    assert len(units) == 3
    assert all(u.phase is UnitPhase.RUNNING and u.version == "v1" for u in units)
    assert all(u.available for u in units)
    assert len(sink.events(kind=UNIT_CREATED)) == 3

    # Converged: further cycles are no-ops.
    assert sync(orchestrator, clock) == []
    assert orchestrator.plan("web") == []


@pytest.mark.parametrize("surge,unavailable", [(1, 0), (0, 1), (2, 1)])
def test_rolling_update_sequence_respects_surge_and_unavailability(orchestrator, clock, surge, unavailable):
    orchestrator.submit(desired_state(version="v1", replicas=3, max_surge=surge, max_unavailable=unavailable))
    converge(orchestrator, clock)

    orchestrator.submit(desired_state(version="v2", replicas=3, max_surge=surge, max_unavailable=unavailable))
    kinds = []
    for _ in range(30):
        if orchestrator.rollout_state("web").phase is RolloutPhase.COMPLETED:
            break
        before = {u.identity: u.version for u in orchestrator.units("web")}
        actions = sync(orchestrator, clock)
        for a in actions:
            if isinstance(a, CreateUnit):
                kinds.append(("create", a.version))
            elif isinstance(a, TerminateUnit):
                kinds.append(("terminate", before[a.identity]))

        active = [u for u in orchestrator.units("web") if u.active]
        assert len(active) <= 3 + surge
        assert sum(1 for u in active if u.available) >= 3 - unavailable

    if (surge, unavailable) == (1, 0):
        assert kinds == [("create", "v2"), ("terminate", "v1")] * 3
    assert kinds.count(("create", "v2")) == 3
    assert kinds.count(("terminate", "v1")) == 3
    st = orchestrator.rollout_state("web")
    assert st.phase is RolloutPhase.COMPLETED
    assert st.current_version == "v2"
    assert versions(orchestrator) == Counter({"v2": 3})


def test_startup_failure_is_replaced_and_rollout_keeps_progressing(orchestrator, clock, probes, sink):
    startup = ProbeConfig(startup=Probe(Exec(command=("check",)), period_s=1, failure_threshold=2))
    orchestrator.submit(desired_state(version="v1", replicas=3, probes=startup))
    converge(orchestrator, clock)

    orchestrator.submit(desired_state(version="v2", replicas=3, probes=startup))
    assert sync(orchestrator, clock) == [CreateUnit("v2")]
    bad = next(u for u in orchestrator.units("web") if u.version == "v2")
    probes.failing.add(bad.identity)

    assert sync(orchestrator, clock) == []  # first startup failure, below threshold
    actions = sync(orchestrator, clock)
    assert TerminateUnit(bad.identity, reason="FailedToStart") in actions
    assert CreateUnit("v2") in actions
    assert orchestrator.rollout_state("web").phase is RolloutPhase.PROGRESSING
    assert [e.unit for e in sink.events(kind=UNIT_FAILED)] == [bad.identity]

    converge(orchestrator, clock)
    assert versions(orchestrator) == Counter({"v2": 3})
    assert bad.identity not in {u.identity for u in orchestrator.units("web")}


def test_pause_holds_the_mix_until_resume(orchestrator, clock):
    orchestrator.submit(desired_state(version="v1", replicas=3))
    converge(orchestrator, clock)
    orchestrator.submit(desired_state(version="v2", replicas=3))
    sync(orchestrator, clock)  # create v2
    sync(orchestrator, clock)  # terminate v1
    assert versions(orchestrator) == Counter({"v1": 2, "v2": 1})

    assert orchestrator.pause("web").phase is RolloutPhase.PAUSED
    for _ in range(5):
        assert sync(orchestrator, clock) == []
        assert len([u for u in orchestrator.units("web") if u.active]) == 3

    # A lost unit is replaced at its own version while paused.
    lost = next(u for u in orchestrator.units("web") if u.version == "v1")
    orchestrator.registry.remove(lost.identity)
    assert sync(orchestrator, clock) == [CreateUnit("v1")]
    assert versions(orchestrator) == Counter({"v1": 2, "v2": 1})

    assert orchestrator.resume("web").phase is RolloutPhase.PROGRESSING
    converge(orchestrator, clock)
    assert versions(orchestrator) == Counter({"v2": 3})


def test_pause_between_terminate_and_create_keeps_replica_count(orchestrator, clock):
    orchestrator.submit(desired_state(version="v1", replicas=3, max_surge=0, max_unavailable=1))
    converge(orchestrator, clock)
    orchestrator.submit(desired_state(version="v2", replicas=3, max_surge=0, max_unavailable=1))

    actions = sync(orchestrator, clock)
    assert [type(a) for a in actions] == [TerminateUnit]
    assert versions(orchestrator) == Counter({"v1": 2})

    orchestrator.pause("web")
    assert sync(orchestrator, clock) == [CreateUnit("v2")]
    for _ in range(5):
        sync(orchestrator, clock)
        active = [u for u in orchestrator.units("web") if u.active]
        assert len(active) == 3
        assert sum(1 for u in active if u.available) >= 2
    assert versions(orchestrator) == Counter({"v1": 2, "v2": 1})

    orchestrator.resume("web")
    converge(orchestrator, clock)
    assert versions(orchestrator) == Counter({"v2": 3})


def test_liveness_failure_replaces_the_unit(orchestrator, clock, probes, sink):
    live = ProbeConfig(liveness=Probe(TcpSocket(port=80), period_s=1, failure_threshold=2))
    orchestrator.submit(desired_state(version="v1", replicas=2, probes=live))
    converge(orchestrator, clock)

    victim = orchestrator.units("web")[0]
    probes.failing.add(victim.identity)
    sync(orchestrator, clock)
    actions = sync(orchestrator, clock)
    assert actions == [TerminateUnit(victim.identity, reason="LivenessProbeFailed"), CreateUnit("v1")]
    assert orchestrator.rollout_state("web").phase is RolloutPhase.COMPLETED

    sync(orchestrator, clock)
    assert len([u for u in orchestrator.units("web") if u.available]) == 2
    assert any(e.kind == HEALTH_CHANGED for e in sink.events())


def test_rollback_round_trip_restores_version_distribution(orchestrator, clock):
    orchestrator.submit(desired_state(version="v1", replicas=3))
    converge(orchestrator, clock)
    original = versions(orchestrator)
    orchestrator.submit(desired_state(version="v2", replicas=3))
    converge(orchestrator, clock)
    updated = versions(orchestrator)

    orchestrator.rollback("web")
    converge(orchestrator, clock)
    assert versions(orchestrator) == original

    orchestrator.rollback("web")
    converge(orchestrator, clock)
    assert versions(orchestrator) == updated
    assert [rev for rev, _ in orchestrator.history("web")] == [1, 2, 3, 4]


def test_scale_down_on_settled_lineage(orchestrator, clock, sink):
    orchestrator.submit(desired_state(version="v1", replicas=3))
    converge(orchestrator, clock)
    oldest = orchestrator.units("web")[0]

    st = orchestrator.submit(desired_state(version="v1", replicas=2, max_unavailable=1))
    assert st.phase is RolloutPhase.COMPLETED
    assert sync(orchestrator, clock) == [TerminateUnit(oldest.identity, reason="ScaleDown")]
    assert len(orchestrator.units("web")) == 2
    assert sink.events(kind=UNIT_TERMINATED)[-1].unit == oldest.identity


def test_create_failures_are_retried_then_stall(orchestrator, clock, driver, sink):
    driver.fail_creates = 2  # attempts=3: succeeds on the third call
    orchestrator.submit(desired_state(version="v1", replicas=1))
    assert sync(orchestrator, clock) == [CreateUnit("v1")]
    assert [u.phase for u in orchestrator.units("web")] == [UnitPhase.RUNNING]
    converge(orchestrator, clock)

    driver.fail_creates = 3
    orchestrator.submit(desired_state(version="v2", replicas=1))
    assert sync(orchestrator, clock) == [CreateUnit("v2")]
    st = orchestrator.rollout_state("web")
    assert st.phase is RolloutPhase.PROGRESSING
    assert st.stalled
    assert st.reason.startswith("ActionFailed")
    assert len(sink.events(kind=ACTION_FAILED)) == 1
    assert versions(orchestrator) == Counter({"v1": 1})

    # Halted: no more actions until someone intervenes.
    assert sync(orchestrator, clock) == []
    with pytest.raises(StalledRollout):
        orchestrator.wait_for_rollout("web", timeout_s=1)

    orchestrator.pause("web")
    orchestrator.resume("web")
    converge(orchestrator, clock)
    assert versions(orchestrator) == Counter({"v2": 1})
    assert orchestrator.wait_for_rollout("web", timeout_s=1).phase is RolloutPhase.COMPLETED


def test_terminate_failure_marks_unit_failed_and_retries_next_cycle(orchestrator, clock, driver):
    orchestrator.submit(desired_state(version="v1", replicas=2))
    converge(orchestrator, clock)
    oldest = orchestrator.units("web")[0]

    driver.fail_terminates = 3
    orchestrator.submit(desired_state(version="v1", replicas=1))
    sync(orchestrator, clock)
    failed = orchestrator.registry.get(oldest.identity)
    assert failed.phase is UnitPhase.FAILED
    assert failed.reason == "TerminateFailed"

    assert sync(orchestrator, clock) == [TerminateUnit(oldest.identity, reason="TerminateFailed")]
    remaining = orchestrator.units("web")
    assert len(remaining) == 1
    assert oldest.identity not in {u.identity for u in remaining}


def test_superseding_command_stops_dispatch(clock, probes):
    holder = {}

    def spawn(fn):
        fn()
        if not holder.get("paused"):
            holder["paused"] = True
            holder["orch"].pause("web")

    evaluator = HealthEvaluator(executor=probes, clock=clock, workers=2)
    orch = Orchestrator(
        evaluator=evaluator,
        driver=SimulatedDriver(),
        event_log=MemorySink(),
        clock=clock,
        spawn=spawn,
        sleep=lambda s: None,
        cfg=Settings(),
    )
    holder["orch"] = orch
    try:
        orch.submit(desired_state(version="v1", replicas=3))
        assert sync(orch, clock) == [CreateUnit("v1")]
        assert len(orch.units("web")) == 1
        assert orch.rollout_state("web").phase is RolloutPhase.PAUSED
        assert sync(orch, clock) == []
    finally:
        evaluator.close()


def test_loop_survives_a_failing_cycle(orchestrator, sink):
    orchestrator.submit(desired_state(version="v1", replicas=1))
    ctl = orchestrator._controller("web")
    called = threading.Event()

    def boom():
        called.set()
        raise RuntimeError("registry unavailable")

    ctl.sync = boom
    ctl.start()
    try:
        assert called.wait(2)
        deadline = time.monotonic() + 2
        while not sink.events(kind=RECONCILER_ERROR) and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        ctl.stop()
    errs = sink.events(kind=RECONCILER_ERROR)
    assert errs and "RuntimeError: registry unavailable" in errs[0].message


def test_lineages_are_independent(orchestrator, clock):
    orchestrator.submit(desired_state(version="v1", replicas=2, lineage="web"))
    orchestrator.submit(desired_state(version="a1", replicas=1, lineage="api"))
    for _ in range(3):
        clock.advance(1)
        orchestrator.sync_all()

    assert orchestrator.lineages() == ["api", "web"]
    assert versions(orchestrator, "web") == Counter({"v1": 2})
    assert versions(orchestrator, "api") == Counter({"a1": 1})
    assert orchestrator.rollout_state("api").phase is RolloutPhase.COMPLETED


class _RacingDriver(SimulatedDriver):
    """Marks the unit Terminating while its create is in flight."""

    def __init__(self, registry):
        super().__init__()
        self.registry = registry

    def create(self, record, template):
        self.registry.update(record.identity, lambda r: replace(r, phase=UnitPhase.TERMINATING, reason="ScaleDown"))
        return super().create(record, template)


def test_terminate_racing_a_create_does_not_leak_the_unit(clock, probes):
    registry = UnitRegistry()
    driver = _RacingDriver(registry)
    evaluator = HealthEvaluator(executor=probes, clock=clock, workers=2)
    orch = Orchestrator(
        registry=registry,
        evaluator=evaluator,
        driver=driver,
        event_log=MemorySink(),
        clock=clock,
        spawn=lambda fn: fn(),
        sleep=lambda s: None,
        cfg=Settings(),
    )
    try:
        orch.submit(desired_state(version="v1", replicas=1))
        assert sync(orch, clock) == [CreateUnit("v1")]
        assert [kind for kind, _ in driver.calls] == ["create", "terminate"]
        assert driver.units == {}
        assert orch.units("web") == []
    finally:
        evaluator.close()
