import os as _os
import sys

import pytest

# Ensure project root is importable (so `import cli` / `import examples...` work across environments)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleetrec.drivers import SimulatedDriver
from fleetrec.events import MemorySink
from fleetrec.health import HealthEvaluator, ProbeOutcome, ProbeResult
from fleetrec.models import DesiredState, UnitTemplate, UpdateStrategy
from fleetrec.orchestrator import Orchestrator
from fleetrec.registry import UnitRegistry
from fleetrec.settings import Settings


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProbes:
    """Probe executor whose answers are decided by the test.

    `failing` holds unit identities (or versions) whose probes fail.
    """

    def __init__(self):
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def __call__(self, handler, record, timeout_s):
        self.calls.append((handler.kind, record.identity))
        if record.identity in self.failing or record.version in self.failing:
            return ProbeResult(ProbeOutcome.FAILURE, "scripted failure")
        return ProbeResult(ProbeOutcome.SUCCESS, "scripted success")


def desired_state(version="v1", replicas=3, max_surge=1, max_unavailable=0, lineage="web", probes=None, deadline=600.0):
    tpl = UnitTemplate(version=version, probes=probes) if probes is not None else UnitTemplate(version=version)
    return DesiredState(
        lineage=lineage,
        replicas=replicas,
        template=tpl,
        strategy=UpdateStrategy(max_surge=max_surge, max_unavailable=max_unavailable),
        progress_deadline_s=deadline,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def probes():
    return ScriptedProbes()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def driver():
    return SimulatedDriver()


@pytest.fixture
def orchestrator(clock, probes, sink, driver):
    """Deterministic orchestrator: actions run inline, retries do not sleep."""
    evaluator = HealthEvaluator(executor=probes, clock=clock, workers=4)
    orch = Orchestrator(
        registry=UnitRegistry(),
        evaluator=evaluator,
        driver=driver,
        event_log=sink,
        clock=clock,
        spawn=lambda fn: fn(),
        sleep=lambda s: None,
        cfg=Settings(action_attempts=3, action_backoff_s=0.01, action_backoff_max_s=0.05),
    )
    yield orch
    orch.stop()
    evaluator.close()
