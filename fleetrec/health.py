from __future__ import annotations

import os
import socket
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock, Thread
from typing import Callable, Iterable

import httpx

from .errors import ProbeTimeout
from .models import (
    Exec,
    HealthStatus,
    HttpGet,
    Liveness,
    Probe,
    ProbeConfig,
    ProbeHandler,
    Readiness,
    TcpSocket,
    UnitRecord,
)
from .settings import settings


class ProbeOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ProbeResult:
    outcome: ProbeOutcome
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS


ProbeExecutor = Callable[[ProbeHandler, UnitRecord, float], ProbeResult]


def _http_probe(h: HttpGet, record: UnitRecord, timeout_s: float) -> ProbeResult:
    """GET the probe path; any 2xx/3xx status counts as success."""
    host = h.host or record.address
    if not host:
        return ProbeResult(ProbeOutcome.FAILURE, "No address")
    url = f"{h.scheme}://{host}:{int(h.port)}{h.path}"
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except httpx.TimeoutException:
        return ProbeResult(ProbeOutcome.TIMEOUT, "No response")
    except httpx.HTTPError as e:
        return ProbeResult(ProbeOutcome.FAILURE, f"Error: {type(e).__name__}: {e}")
    if 200 <= resp.status_code < 400:
        return ProbeResult(ProbeOutcome.SUCCESS, f"HTTP {resp.status_code}")
    return ProbeResult(ProbeOutcome.FAILURE, f"HTTP {resp.status_code}")


def _tcp_probe(h: TcpSocket, record: UnitRecord, timeout_s: float) -> ProbeResult:
    host = h.host or record.address
    if not host:
        return ProbeResult(ProbeOutcome.FAILURE, "No address")
    try:
        with socket.create_connection((host, int(h.port)), timeout=timeout_s):
            return ProbeResult(ProbeOutcome.SUCCESS, "Connected")
    except socket.timeout:
        return ProbeResult(ProbeOutcome.TIMEOUT, "Connect timed out")
    except OSError as e:
        return ProbeResult(ProbeOutcome.FAILURE, f"Connect failed: {e}")


def _exec_probe(h: Exec, record: UnitRecord, timeout_s: float) -> ProbeResult:
    # The command sees the unit it is checking through UNIT_ID / UNIT_ADDRESS.
    env = dict(os.environ)
    env["UNIT_ID"] = record.identity
    env["UNIT_ADDRESS"] = record.address or ""
    try:
        proc = subprocess.run(list(h.command), capture_output=True, timeout=timeout_s, env=env)
    except subprocess.TimeoutExpired:
        return ProbeResult(ProbeOutcome.TIMEOUT, "Command timed out")
    except OSError as e:
        return ProbeResult(ProbeOutcome.FAILURE, f"Command failed: {e}")
    if proc.returncode == 0:
        return ProbeResult(ProbeOutcome.SUCCESS, "Exit 0")
    return ProbeResult(ProbeOutcome.FAILURE, f"Exit {proc.returncode}")


_RUNNERS: dict[str, Callable[..., ProbeResult]] = {
    HttpGet.kind: _http_probe,
    TcpSocket.kind: _tcp_probe,
    Exec.kind: _exec_probe,
}


def run_probe(handler: ProbeHandler, record: UnitRecord, timeout_s: float) -> ProbeResult:
    """Default probe executor: dispatch on the handler kind."""
    try:
        runner = _RUNNERS[handler.kind]
    except KeyError:
        raise ValueError(f"unsupported probe kind {handler.kind!r}") from None
    return runner(handler, record, timeout_s)


@dataclass
class _Counter:
    successes: int = 0
    failures: int = 0
    last_run: float | None = None
    message: str = ""

    def record(self, res: ProbeResult, now: float) -> None:
        self.last_run = now
        self.message = res.message
        if res.ok:
            self.successes += 1
            self.failures = 0
        else:
            self.failures += 1
            self.successes = 0


@dataclass
class _UnitTrack:
    startup: _Counter = field(default_factory=_Counter)
    liveness: _Counter = field(default_factory=_Counter)
    readiness: _Counter = field(default_factory=_Counter)
    started: bool = False
    ready: bool = False


class HealthEvaluator:
    """Applies startup/liveness/readiness probe semantics to units.

    Consecutive pass/fail counters live here, keyed by unit identity, and
    survive between evaluation cycles. Every probe call is bounded by the
    probe timeout; a timeout counts as one failure.
    """

    def __init__(
        self,
        executor: ProbeExecutor = run_probe,
        clock: Callable[[], float] = time.time,
        workers: int = settings.probe_workers,
    ):
        self.executor = executor
        self.clock = clock
        self._lock = Lock()
        self._tracks: dict[str, _UnitTrack] = {}
        workers = max(1, int(workers))
        self._fanout_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe-unit")

    def close(self) -> None:
        self._fanout_pool.shutdown(wait=False)

    def forget(self, identity: str) -> None:
        with self._lock:
            self._tracks.pop(identity, None)

    def _track(self, identity: str) -> _UnitTrack:
        with self._lock:
            return self._tracks.setdefault(identity, _UnitTrack())

    def _call(self, probe: Probe, record: UnitRecord) -> ProbeResult:
        # One thread per call; the timeout covers only this probe, never a queue wait.
        outcome: list = []

        def run() -> None:
            try:
                outcome.append((True, self.executor(probe.handler, record, probe.timeout_s)))
            except Exception as e:
                outcome.append((False, e))

        t = Thread(target=run, daemon=True, name=f"probe-{record.identity}")
        t.start()
        t.join(probe.timeout_s)
        if not outcome:
            raise ProbeTimeout(f"{probe.handler.kind} probe timed out after {probe.timeout_s}s")
        ok, value = outcome[0]
        if not ok:
            raise value
        return value

    def _run_if_due(self, probe: Probe, counter: _Counter, record: UnitRecord, now: float) -> None:
        if now - record.created_at < probe.initial_delay_s:
            return
        if counter.last_run is not None and now - counter.last_run < probe.period_s:
            return
        try:
            res = self._call(probe, record)
        except ProbeTimeout as e:
            res = ProbeResult(ProbeOutcome.TIMEOUT, str(e))
        except Exception as e:
            res = ProbeResult(ProbeOutcome.FAILURE, f"Error: {type(e).__name__}: {e}")
        counter.record(res, now)

    def evaluate(self, record: UnitRecord, probes: ProbeConfig, now: float | None = None) -> HealthStatus:
        now = self.clock() if now is None else now
        t = self._track(record.identity)

        if probes.startup is not None and not t.started:
            p = probes.startup
            self._run_if_due(p, t.startup, record, now)
            if t.startup.successes >= 1:
                t.started = True
            elif t.startup.failures >= p.failure_threshold:
                return HealthStatus(
                    liveness=Liveness.DEAD,
                    readiness=Readiness.NOT_READY,
                    consecutive_failures=t.startup.failures,
                    started=False,
                    failed_to_start=True,
                    message=f"Startup probe failed {t.startup.failures} times: {t.startup.message}",
                )
            else:
                return HealthStatus(
                    readiness=Readiness.NOT_READY,
                    consecutive_failures=t.startup.failures,
                    started=False,
                    message=t.startup.message or "Waiting for startup probe",
                )
        t.started = True

        liveness = Liveness.ALIVE
        message = "Healthy"
        if probes.liveness is not None:
            self._run_if_due(probes.liveness, t.liveness, record, now)
            if t.liveness.failures >= probes.liveness.failure_threshold:
                liveness = Liveness.DEAD
                message = f"Liveness probe failed {t.liveness.failures} times: {t.liveness.message}"

        if probes.readiness is not None:
            p = probes.readiness
            self._run_if_due(p, t.readiness, record, now)
            if t.ready and t.readiness.failures >= p.failure_threshold:
                t.ready = False
            elif not t.ready and t.readiness.successes >= p.success_threshold:
                t.ready = True
            if not t.ready and liveness is Liveness.ALIVE:
                message = t.readiness.message or "Waiting for readiness probe"
        else:
            t.ready = True

        ready = t.ready and liveness is Liveness.ALIVE
        return HealthStatus(
            liveness=liveness,
            readiness=Readiness.READY if ready else Readiness.NOT_READY,
            consecutive_failures=max(t.liveness.failures, t.readiness.failures),
            started=True,
            message=message,
        )

    def evaluate_many(
        self,
        records: Iterable[UnitRecord],
        probes_for: Callable[[UnitRecord], ProbeConfig],
        now: float | None = None,
    ) -> dict[str, HealthStatus]:
        """Probe distinct units in parallel."""
        now = self.clock() if now is None else now
        futs = {r.identity: self._fanout_pool.submit(self.evaluate, r, probes_for(r), now) for r in records}
        return {identity: f.result() for identity, f in futs.items()}
