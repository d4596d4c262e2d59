"""Error taxonomy for rollback and traffic-switch operations.

Each error names the check that failed (``reason``) and what the cluster was
left in (``cluster_state``), and maps to a distinct process exit code.
"""

from __future__ import annotations


class SlotControlError(Exception):
    """Base class for every rejection or failure reported to the operator."""

    exit_code = 2
    title = "Operation failed"

    def __init__(self, reason: str, cluster_state: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.cluster_state = cluster_state

    def explain(self) -> str:
        """Multi-line explanation for the operator."""
        lines = [f"{self.title}: {self.reason}"]
        if self.cluster_state:
            lines.append(f"Cluster state: {self.cluster_state}")
        return "\n".join(lines)


class RollbackCancelled(SlotControlError):
    """The operator declined the confirmation prompt."""

    exit_code = 1
    title = "Cancelled"


class PermissionDenied(SlotControlError):
    """The ref/event/override combination does not permit the action."""

    exit_code = 3
    title = "Permission denied"


class AmbiguousState(SlotControlError):
    """The active slot could not be determined from live routing."""

    exit_code = 4
    title = "Ambiguous routing state"


class PreconditionFailed(SlotControlError):
    """The rollback target is not in a state that can take traffic."""

    exit_code = 5
    title = "Precondition failed"


class SwitchFailed(SlotControlError):
    """The routing update or Helm rollback call failed."""

    exit_code = 6
    title = "Switch failed"


class HealthRejected(SlotControlError):
    """The workload was ready but its health endpoint reported a failure."""

    exit_code = 7
    title = "Health check rejected"


class HealthTimeout(SlotControlError):
    """The health check ran out of attempts without a definite result."""

    exit_code = 8
    title = "Health check inconclusive"
