"""Blue/green slots and the live routing state that decides which is active.

Slot namespaces follow ``{environment}-{app}-{slot}``. The active slot is
whatever namespace the environment's ingress rule currently points at; it
is re-read from the cluster on every call and never cached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from slot_control.cluster import pod_is_ready, pod_is_running

if TYPE_CHECKING:
    from slot_control.cluster import ClusterClient
    from slot_control.config import ControllerConfig, EnvironmentConfig

logger = logging.getLogger(__name__)


class Slot(Enum):
    """One of the two parallel Blue-Green copies."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def complement(self) -> Slot:
        return Slot.GREEN if self == Slot.BLUE else Slot.BLUE


def slot_namespace(config: ControllerConfig, env: EnvironmentConfig, slot: Slot) -> str:
    return f"{env.name}-{config.app_name}-{slot.value}"


def rolling_namespace(config: ControllerConfig, env: EnvironmentConfig) -> str:
    return env.namespace or f"{env.name}-{config.app_name}"


@dataclass(frozen=True)
class DeploymentTarget:
    """The (environment, namespace) pair an operation acts on."""

    environment: str
    namespace: str
    deployment: str
    slot: Slot | None = None

    @classmethod
    def for_slot(
        cls, config: ControllerConfig, env: EnvironmentConfig, slot: Slot
    ) -> DeploymentTarget:
        return cls(env.name, slot_namespace(config, env, slot), config.app_name, slot)

    @classmethod
    def for_rolling(cls, config: ControllerConfig, env: EnvironmentConfig) -> DeploymentTarget:
        return cls(env.name, rolling_namespace(config, env), config.app_name)

    def __str__(self) -> str:
        return f"{self.environment}/{self.namespace}"


@dataclass(frozen=True)
class RoutingState:
    """What the environment's ingress points at right now."""

    environment: str
    host: str
    backend_namespace: str
    slot: Slot | None
    resource_version: str | None = None
    exists: bool = True


@dataclass(frozen=True)
class SlotSummary:
    """Pod counts for one namespace, as shown by ``slotctl status``."""

    namespace: str
    slot: Slot | None
    active: bool
    exists: bool
    total: int = 0
    running: int = 0
    ready: int = 0

    def describe(self) -> str:
        label = self.slot.value if self.slot else "rolling"
        marker = " (active)" if self.active else ""
        if not self.exists:
            return f"{label}{marker}: namespace {self.namespace} not found"
        if self.total == 0:
            return f"{label}{marker}: no pods in {self.namespace}"
        return (
            f"{label}{marker}: {self.ready}/{self.total} ready, "
            f"{self.running}/{self.total} running in {self.namespace}"
        )


def _backend_namespaces(ingress: dict[str, Any], host: str) -> set[str]:
    rules = ingress.get("spec", {}).get("rules") or []
    if host:
        rules = [r for r in rules if r.get("host") == host]
    elif rules:
        rules = rules[:1]
    namespaces = set()
    for rule in rules:
        for path in rule.get("http", {}).get("paths") or []:
            service = path.get("backend", {}).get("service", {})
            namespaces.add(service.get("namespace", ""))
    return namespaces


class SlotInspector:
    """Reads the active slot of a Blue-Green environment from its ingress."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        self.cluster = cluster
        self.config = config

    def _blue_green_env(self, environment: str) -> EnvironmentConfig:
        env = self.config.environment(environment)
        if not env.blue_green:
            raise ValueError(f"Environment '{environment}' uses rolling deployments and has no slots")
        return env

    def read_routing(self, environment: str) -> RoutingState:
        """Read the ingress and resolve which slot it routes to.

        The slot is None when the ingress is missing, when its rule for the
        environment's host points at more than one namespace, or when the
        namespace follows neither slot's naming convention.
        """
        env = self._blue_green_env(environment)
        ingress = self.cluster.get_ingress(self.config.ingress_name, self.config.ingress_namespace)
        if ingress is None:
            logger.warning(
                "Ingress %s/%s not found",
                self.config.ingress_namespace,
                self.config.ingress_name,
            )
            return RoutingState(env.name, env.host, "", None, exists=False)

        version = ingress.get("metadata", {}).get("resourceVersion")
        namespaces = _backend_namespaces(ingress, env.host)
        backend = namespaces.pop() if len(namespaces) == 1 else ""

        slot = None
        for candidate in Slot:
            if backend == slot_namespace(self.config, env, candidate):
                slot = candidate
                break

        if slot is None:
            logger.warning(
                "Backend namespace %r for %s matches neither slot",
                backend or sorted(namespaces),
                env.host,
            )
        else:
            logger.info("Active slot for %s: %s (%s)", env.name, slot.value, backend)
        return RoutingState(env.name, env.host, backend, slot, resource_version=version)

    def current_active_slot(self, environment: str) -> Slot | None:
        """Return the active slot, or None when it cannot be determined."""
        return self.read_routing(environment).slot

    def summarize(self, environment: str) -> list[SlotSummary]:
        """Pod counts per slot (or for the single rolling namespace)."""
        env = self.config.environment(environment)
        if not env.blue_green:
            return [self._summarize_namespace(rolling_namespace(self.config, env), None, True)]

        active = self.current_active_slot(environment)
        return [
            self._summarize_namespace(slot_namespace(self.config, env, slot), slot, slot == active)
            for slot in Slot
        ]

    def _summarize_namespace(self, namespace: str, slot: Slot | None, active: bool) -> SlotSummary:
        if not self.cluster.namespace_exists(namespace):
            return SlotSummary(namespace, slot, active, exists=False)
        pods = self.cluster.list_pods(namespace, self.config.pod_selector)
        running = [p for p in pods if pod_is_running(p)]
        return SlotSummary(
            namespace,
            slot,
            active,
            exists=True,
            total=len(pods),
            running=len(running),
            ready=sum(1 for p in running if pod_is_ready(p)),
        )
