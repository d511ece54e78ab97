from __future__ import annotations


class FleetError(Exception):
    """Base class for reconciler errors."""


class NotFound(FleetError, KeyError):
    """Registry or lineage lookup miss."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InvalidDesiredState(FleetError, ValueError):
    """Rejected at submission: contradictory or malformed desired state."""


class InvalidTransition(FleetError):
    """Rollout command not allowed in the current phase."""


class ProbeTimeout(FleetError):
    """A probe did not answer within its timeout. Counts as one failure."""


class ActionFailed(FleetError):
    """The execution boundary rejected a create/terminate action."""


class StalledRollout(FleetError):
    """Rollout stopped making progress and needs a manual decision."""

    def __init__(self, lineage: str, reason: str):
        super().__init__(f"Rollout of '{lineage}' stalled: {reason}")
        self.lineage = lineage
        self.reason = reason
