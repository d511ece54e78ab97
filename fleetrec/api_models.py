from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from .models import DesiredState, Exec, HttpGet, Probe, ProbeConfig, TcpSocket, UnitTemplate, UpdateStrategy
from .settings import settings


class ProbeModel(BaseModel):
    kind: Literal["http", "tcp", "exec"]
    port: int | None = Field(None, ge=1, le=65535, description="Port for http/tcp probes")
    path: str = Field("/health", description="Path for http probes")
    host: str | None = Field(None, description="Defaults to the unit address")
    command: list[str] | None = Field(None, description="Argv for exec probes")

    initial_delay_s: float = Field(0.0, ge=0)
    period_s: float = Field(10.0, gt=0)
    timeout_s: float = Field(1.0, gt=0)
    failure_threshold: int = Field(3, ge=1)
    success_threshold: int = Field(1, ge=1)

    def to_probe(self) -> Probe:
        if self.kind == "exec":
            if not self.command:
                raise ValueError("exec probes need a command")
            handler = Exec(command=tuple(self.command))
        else:
            if self.port is None:
                raise ValueError(f"{self.kind} probes need a port")
            if self.kind == "http":
                # Keep it a path (not a full URL) so probes cannot be aimed elsewhere.
                if not self.path.startswith("/") or "://" in self.path:
                    raise ValueError("path must be a simple absolute path")
                handler = HttpGet(port=self.port, path=self.path, host=self.host)
            else:
                handler = TcpSocket(port=self.port, host=self.host)
        return Probe(
            handler=handler,
            initial_delay_s=self.initial_delay_s,
            period_s=self.period_s,
            timeout_s=self.timeout_s,
            failure_threshold=self.failure_threshold,
            success_threshold=self.success_threshold,
        )


class DesiredStateRequest(BaseModel):
    lineage: str = Field(..., description="Lineage name (dns-safe)")
    version: str = Field(..., description="Template version label, e.g. v1, v2")
    image: str = Field("", description="Docker image (name:tag), used by the docker driver")
    replicas: int = Field(1, ge=0, le=100)
    max_surge: int = Field(1, ge=0, le=100)
    max_unavailable: int = Field(0, ge=0, le=100)
    progress_deadline_s: float = Field(settings.progress_deadline_s, gt=0)
    env: dict[str, str] = Field(default_factory=dict)

    startup_probe: ProbeModel | None = None
    liveness_probe: ProbeModel | None = None
    readiness_probe: ProbeModel | None = None

    def to_desired(self) -> DesiredState:
        probes = ProbeConfig(
            startup=self.startup_probe.to_probe() if self.startup_probe else None,
            liveness=self.liveness_probe.to_probe() if self.liveness_probe else None,
            readiness=self.readiness_probe.to_probe() if self.readiness_probe else None,
        )
        return DesiredState(
            lineage=self.lineage,
            replicas=self.replicas,
            template=UnitTemplate(
                version=self.version,
                image=self.image,
                env=tuple(sorted(self.env.items())),
                probes=probes,
            ),
            strategy=UpdateStrategy(max_surge=self.max_surge, max_unavailable=self.max_unavailable),
            progress_deadline_s=self.progress_deadline_s,
        )


class RollbackRequest(BaseModel):
    revision: int | None = Field(None, ge=1, description="Defaults to the previous revision")
