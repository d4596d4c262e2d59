"""Bounded health verification of a deployed workload.

Each attempt compares ready against desired replicas. Once they match, the
application's own health endpoint is queried from inside a running pod:

- ``UP``: healthy, stop.
- ``DOWN`` / ``OUT_OF_SERVICE``: unhealthy, stop without further attempts.
- anything else, or replicas not yet ready: try again after the interval.

Running out of attempts yields ``INDETERMINATE``, which is not the same as
an observed failure.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from slot_control.cluster import ClusterCommandError, pod_is_running

if TYPE_CHECKING:
    from collections.abc import Callable

    from slot_control.cluster import ClusterClient
    from slot_control.config import ControllerConfig
    from slot_control.slots import DeploymentTarget

logger = logging.getLogger(__name__)

UP_STATUS = "UP"
DOWN_STATUSES = frozenset({"DOWN", "OUT_OF_SERVICE"})


class HealthStatus(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ReplicaCount:
    ready: int
    desired: int

    @property
    def matched(self) -> bool:
        return self.ready == self.desired and self.desired > 0


@dataclass(frozen=True)
class HealthVerdict:
    """Result of a probing sequence."""

    status: HealthStatus
    ready: int
    desired: int
    attempts: int
    endpoint_status: str = ""
    last_error: str = ""
    elapsed_seconds: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def describe(self) -> str:
        text = (
            f"{self.status.value} after {self.attempts} attempt(s), "
            f"{self.ready}/{self.desired} replicas ready"
        )
        if self.endpoint_status:
            text += f", health endpoint {self.endpoint_status}"
        if self.last_error and not self.healthy:
            text += f" (last error: {self.last_error})"
        return text


class HealthProbe(ABC):
    """Source of replica counts and application health for a target."""

    @abstractmethod
    def replicas(self, target: DeploymentTarget) -> ReplicaCount: ...

    @abstractmethod
    def endpoint_status(self, target: DeploymentTarget) -> str:
        """Return the health endpoint's ``status`` field, or "" if it gave none."""


class ClusterProbe(HealthProbe):
    """Probes through the cluster: deployment status and ``curl`` in a pod."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        self.cluster = cluster
        self.config = config

    def replicas(self, target: DeploymentTarget) -> ReplicaCount:
        deployment = self.cluster.get_deployment(target.deployment, target.namespace)
        if deployment is None:
            return ReplicaCount(0, 0)
        return ReplicaCount(
            ready=int(deployment.get("status", {}).get("readyReplicas") or 0),
            desired=int(deployment.get("spec", {}).get("replicas") or 0),
        )

    def endpoint_status(self, target: DeploymentTarget) -> str:
        pods = self.cluster.list_pods(target.namespace, self.config.pod_selector)
        running = [p for p in pods if pod_is_running(p)]
        if not running:
            return ""
        pod = running[0]["metadata"]["name"]
        url = f"http://localhost:{self.config.service_port}{self.config.health_path}"
        # no -f: a failing Spring Boot actuator answers 503 with a DOWN body
        body = self.cluster.exec_in_pod(target.namespace, pod, ["curl", "-s", url])
        try:
            data = json.loads(body)
        except ValueError:
            return ""
        if not isinstance(data, dict):
            return ""
        return str(data.get("status", "")).upper()


class HealthVerifier:
    """Polls a probe with bounded retries and returns a verdict.

    Args:
        probe: Where replica counts and endpoint status come from.
        sleep: Called between attempts; injectable for tests.
        clock: Monotonic clock used to report elapsed time.
    """

    def __init__(
        self,
        probe: HealthProbe,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self._sleep = sleep
        self._clock = clock

    def verify(
        self,
        target: DeploymentTarget,
        max_attempts: int = 30,
        interval_seconds: float = 10,
    ) -> HealthVerdict:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")

        started = self._clock()
        counts = ReplicaCount(0, 0)
        endpoint = ""
        last_error = ""

        def verdict(status: HealthStatus, attempts: int) -> HealthVerdict:
            result = HealthVerdict(
                status=status,
                ready=counts.ready,
                desired=counts.desired,
                attempts=attempts,
                endpoint_status=endpoint,
                last_error=last_error,
                elapsed_seconds=self._clock() - started,
            )
            logger.info("Health of %s: %s", target, result.describe())
            return result

        for attempt in range(1, max_attempts + 1):
            logger.info("Health check attempt %d/%d for %s", attempt, max_attempts, target)
            try:
                counts = self.probe.replicas(target)
                if not counts.matched:
                    last_error = f"{counts.ready}/{counts.desired} replicas ready"
                else:
                    endpoint = self.probe.endpoint_status(target)
                    if endpoint == UP_STATUS:
                        last_error = ""
                        return verdict(HealthStatus.HEALTHY, attempt)
                    if endpoint in DOWN_STATUSES:
                        last_error = f"health endpoint reported {endpoint}"
                        return verdict(HealthStatus.UNHEALTHY, attempt)
                    last_error = f"health endpoint reported {endpoint or 'no status'}"
            except ClusterCommandError as exc:
                last_error = str(exc)
            logger.debug("Attempt %d not healthy yet: %s", attempt, last_error)

            if attempt < max_attempts:
                self._sleep(interval_seconds)

        return verdict(HealthStatus.INDETERMINATE, max_attempts)
