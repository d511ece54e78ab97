from __future__ import annotations

from typing import Callable

import docker
from docker.errors import DockerException
from docker.errors import NotFound as DockerNotFound

from .errors import ActionFailed
from .models import UnitRecord, UnitTemplate
from .settings import settings


def container_name(identity: str) -> str:
    return f"fleet-{identity}"


class DockerDriver:
    """Runs each unit as a container attached to a dedicated bridge network.

    Containers are labeled so they can be found again by lineage or version.
    The unit address is the container name, resolvable inside the network.
    """

    def __init__(
        self,
        network: str = settings.docker_network,
        client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ):
        self.network = network
        self._client_factory = client_factory

    def _client(self) -> docker.DockerClient:
        return self._client_factory()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except DockerNotFound:
            c.networks.create(self.network, driver="bridge")

    def create(self, record: UnitRecord, template: UnitTemplate) -> str | None:
        if not template.image:
            raise ActionFailed(f"template {template.version} has no image")
        name = container_name(record.identity)
        env = dict(template.env)
        env.update({"UNIT_ID": record.identity, "VERSION": record.version})
        labels = {
            "fleet.lineage": record.lineage,
            "fleet.unit": record.identity,
            "fleet.version": record.version,
        }
        try:
            self.ensure_network()
            self._client().containers.run(
                template.image,
                detach=True,
                name=name,
                environment=env,
                network=self.network,
                labels=labels,
                # Restarts are driven by liveness probes; keep Docker's own policy off.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise ActionFailed(f"could not start {name}: {e}") from e
        return name

    def terminate(self, record: UnitRecord) -> None:
        name = container_name(record.identity)
        try:
            self._client().containers.get(name).remove(force=True)
        except DockerNotFound:
            return
        except DockerException as e:
            raise ActionFailed(f"could not remove {name}: {e}") from e
