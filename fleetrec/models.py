from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from .errors import InvalidDesiredState


LINEAGE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VERSION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$")


class UnitPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class Liveness(str, Enum):
    ALIVE = "Alive"
    DEAD = "Dead"


class Readiness(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"


class RolloutPhase(str, Enum):
    IDLE = "Idle"
    PROGRESSING = "Progressing"
    PAUSED = "Paused"
    ROLLED_BACK = "RolledBack"
    COMPLETED = "Completed"


# --- probes ---------------------------------------------------------------


@dataclass(frozen=True)
class HttpGet:
    kind: ClassVar[str] = "http"
    port: int
    path: str = "/health"
    host: str | None = None  # defaults to the unit address
    scheme: str = "http"


@dataclass(frozen=True)
class TcpSocket:
    kind: ClassVar[str] = "tcp"
    port: int
    host: str | None = None


@dataclass(frozen=True)
class Exec:
    kind: ClassVar[str] = "exec"
    command: tuple[str, ...]


ProbeHandler = Union[HttpGet, TcpSocket, Exec]


@dataclass(frozen=True)
class Probe:
    handler: ProbeHandler
    initial_delay_s: float = 0.0
    period_s: float = 10.0
    timeout_s: float = 1.0
    failure_threshold: int = 3
    success_threshold: int = 1


@dataclass(frozen=True)
class ProbeConfig:
    startup: Probe | None = None
    liveness: Probe | None = None
    readiness: Probe | None = None


# --- desired state ----------------------------------------------------------


@dataclass(frozen=True)
class UpdateStrategy:
    max_surge: int = 1
    max_unavailable: int = 0


@dataclass(frozen=True)
class UnitTemplate:
    version: str
    image: str = ""
    env: tuple[tuple[str, str], ...] = ()
    probes: ProbeConfig = field(default_factory=ProbeConfig)


@dataclass(frozen=True)
class DesiredState:
    lineage: str
    replicas: int
    template: UnitTemplate
    strategy: UpdateStrategy = field(default_factory=UpdateStrategy)
    progress_deadline_s: float = 600.0

    @property
    def version(self) -> str:
        return self.template.version

    @property
    def max_total(self) -> int:
        return self.replicas + self.strategy.max_surge

    @property
    def min_available(self) -> int:
        return max(0, self.replicas - self.strategy.max_unavailable)

    def validate(self) -> "DesiredState":
        """Raise InvalidDesiredState on contradictory parameters; return self."""
        if not LINEAGE_NAME_RE.match(self.lineage):
            raise InvalidDesiredState(
                "Invalid lineage name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        if not VERSION_RE.match(self.version):
            raise InvalidDesiredState("Invalid version string. Use letters/numbers and -._ (max 64 chars).")
        if self.replicas < 0:
            raise InvalidDesiredState("replicas must be >= 0.")
        s = self.strategy
        if s.max_surge < 0 or s.max_unavailable < 0:
            raise InvalidDesiredState("max_surge and max_unavailable must be >= 0.")
        if self.replicas > 0 and s.max_unavailable >= self.replicas:
            raise InvalidDesiredState(
                f"max_unavailable ({s.max_unavailable}) must be lower than replicas ({self.replicas})."
            )
        if s.max_surge == 0 and s.max_unavailable == 0:
            raise InvalidDesiredState("max_surge and max_unavailable cannot both be 0.")
        if self.progress_deadline_s <= 0:
            raise InvalidDesiredState("progress_deadline_s must be > 0.")

        probes = self.template.probes
        for name, probe in (("startup", probes.startup), ("liveness", probes.liveness), ("readiness", probes.readiness)):
            if probe is None:
                continue
            if probe.period_s <= 0 or probe.timeout_s <= 0 or probe.initial_delay_s < 0:
                raise InvalidDesiredState(f"{name} probe timings must be positive.")
            if probe.failure_threshold < 1 or probe.success_threshold < 1:
                raise InvalidDesiredState(f"{name} probe thresholds must be >= 1.")
            if name != "readiness" and probe.success_threshold != 1:
                raise InvalidDesiredState(f"{name} probe success_threshold must be 1.")
        return self


# --- observed state ---------------------------------------------------------


@dataclass(frozen=True)
class HealthStatus:
    liveness: Liveness = Liveness.ALIVE
    readiness: Readiness = Readiness.NOT_READY
    consecutive_failures: int = 0
    started: bool = True
    failed_to_start: bool = False
    message: str = ""

    @property
    def ready(self) -> bool:
        return self.readiness is Readiness.READY and self.liveness is Liveness.ALIVE


@dataclass(frozen=True)
class UnitRecord:
    identity: str
    lineage: str
    version: str
    phase: UnitPhase = UnitPhase.PENDING
    health: HealthStatus | None = None  # last health-check result
    created_at: float = field(default_factory=time.time)
    address: str | None = None
    reason: str = ""

    @property
    def active(self) -> bool:
        return self.phase in (UnitPhase.PENDING, UnitPhase.RUNNING)

    @property
    def available(self) -> bool:
        return self.phase is UnitPhase.RUNNING and self.health is not None and self.health.ready


@dataclass
class RolloutState:
    lineage: str
    phase: RolloutPhase = RolloutPhase.IDLE
    current_version: str | None = None  # last version fully rolled out
    target_version: str | None = None
    revision: int = 0
    replicas: int = 0
    updated: int = 0  # active units at target version
    ready_updated: int = 0
    total: int = 0
    available: int = 0
    stalled: bool = False
    reason: str = ""
    updated_at: float = field(default_factory=time.time)


# --- actions ----------------------------------------------------------------


@dataclass(frozen=True)
class CreateUnit:
    kind: ClassVar[str] = "create"
    version: str


@dataclass(frozen=True)
class TerminateUnit:
    kind: ClassVar[str] = "terminate"
    identity: str
    reason: str = ""


@dataclass(frozen=True)
class NoOp:
    kind: ClassVar[str] = "noop"
    reason: str = ""


Action = Union[CreateUnit, TerminateUnit, NoOp]


def action_to_dict(action: Action) -> dict[str, object]:
    if isinstance(action, CreateUnit):
        return {"kind": action.kind, "version": action.version}
    if isinstance(action, TerminateUnit):
        return {"kind": action.kind, "identity": action.identity, "reason": action.reason}
    return {"kind": action.kind, "reason": action.reason}
