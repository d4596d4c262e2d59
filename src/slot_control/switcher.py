"""Traffic switching: the only code that mutates routing or release state.

Neither the ingress patch nor the Helm rollback is retried here. A failure is
raised as ``SwitchFailed`` and the operator decides whether to re-run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from slot_control.cluster import ClusterCommandError
from slot_control.errors import SwitchFailed
from slot_control.planner import RollbackStrategy
from slot_control.slots import SlotInspector, slot_namespace

if TYPE_CHECKING:
    from collections.abc import Callable

    from slot_control.cluster import ClusterClient
    from slot_control.config import ControllerConfig, EnvironmentConfig
    from slot_control.planner import RevisionDecision
    from slot_control.slots import Slot

logger = logging.getLogger(__name__)

ACTIVE_SLOT_LABEL = "active-slot"
ACTIVE_SINCE_ANNOTATION = "slot-control.io/active-since"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AppliedRouting:
    """Routing after a switch. ``changed`` is False for a no-op switch."""

    environment: str
    host: str
    slot: Slot
    namespace: str
    changed: bool
    resource_version: str | None = None


class TrafficSwitcher:
    """Points an environment's ingress at a slot's namespace."""

    def __init__(
        self,
        cluster: ClusterClient,
        config: ControllerConfig,
        inspector: SlotInspector | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cluster = cluster
        self.config = config
        self.inspector = inspector or SlotInspector(cluster, config)
        self._now = now

    def switch(
        self,
        environment: str,
        target_slot: Slot,
        expected_version: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> AppliedRouting:
        """Route ``environment`` to ``target_slot`` in a single ingress patch.

        Args:
            environment: A Blue-Green environment name.
            target_slot: Slot to route traffic to.
            expected_version: Ingress resourceVersion captured when the active
                slot was inspected. The patch is refused if the ingress has
                changed since.
            annotations: Extra annotations (audit trail) written in the same patch.

        Returns:
            The applied routing. Switching to the already-active slot writes
            nothing and returns ``changed=False``.

        Raises:
            SwitchFailed: If the ingress is missing, changed concurrently, or
                the patch call fails.
        """
        env = self.config.environment(environment)
        namespace = slot_namespace(self.config, env, target_slot)
        ingress_ref = f"{self.config.ingress_namespace}/{self.config.ingress_name}"

        try:
            current = self.inspector.read_routing(environment)
        except ClusterCommandError as exc:
            raise SwitchFailed(
                f"could not read ingress {ingress_ref}: {exc}",
                cluster_state="routing unchanged",
            ) from exc

        if not current.exists:
            raise SwitchFailed(
                f"ingress {ingress_ref} not found",
                cluster_state="routing unchanged",
            )

        if current.slot == target_slot:
            logger.info("%s already routes to %s; nothing to switch", env.name, target_slot.value)
            return AppliedRouting(
                env.name, env.host, target_slot, namespace,
                changed=False, resource_version=current.resource_version,
            )

        if expected_version is None:
            logger.warning(
                "No resourceVersion captured for %s; concurrent switches against it are unsafe",
                ingress_ref,
            )
        elif current.resource_version != expected_version:
            raise SwitchFailed(
                f"ingress {ingress_ref} changed since it was inspected "
                f"(resourceVersion {expected_version} -> {current.resource_version})",
                cluster_state=f"routing unchanged, still pointing at {current.backend_namespace or 'unknown'}",
            )

        patch = self._routing_patch(env, namespace, target_slot, expected_version, annotations)
        logger.info("Switching %s (%s) to %s", env.name, env.host, namespace)
        try:
            updated = self.cluster.patch_ingress(
                self.config.ingress_name, self.config.ingress_namespace, patch
            )
        except ClusterCommandError as exc:
            raise SwitchFailed(
                f"ingress patch failed: {exc}",
                cluster_state=f"routing unchanged, still pointing at {current.backend_namespace or 'unknown'}",
            ) from exc

        logger.info("Traffic for %s switched to %s", env.name, target_slot.value)
        return AppliedRouting(
            env.name, env.host, target_slot, namespace,
            changed=True,
            resource_version=updated.get("metadata", {}).get("resourceVersion"),
        )

    def _routing_patch(
        self,
        env: EnvironmentConfig,
        namespace: str,
        slot: Slot,
        expected_version: str | None,
        annotations: dict[str, str] | None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "labels": {ACTIVE_SLOT_LABEL: slot.value},
            "annotations": {
                ACTIVE_SINCE_ANNOTATION: self._now().isoformat(timespec="seconds"),
                **(annotations or {}),
            },
        }
        if expected_version is not None:
            metadata["resourceVersion"] = expected_version
        return {
            "metadata": metadata,
            "spec": {
                "rules": [{
                    "host": env.host,
                    "http": {
                        "paths": [{
                            "path": self.config.ingress_path,
                            "pathType": "ImplementationSpecific",
                            "backend": {
                                "service": {
                                    "name": self.config.app_name,
                                    "namespace": namespace,
                                    "port": {"number": self.config.service_port},
                                },
                            },
                        }],
                    },
                }],
            },
        }


class RevisionRoller:
    """Rolls a rolling environment back through Helm."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        self.cluster = cluster
        self.config = config

    def roll_back(
        self,
        environment: str,
        decision: RevisionDecision,
        annotations: dict[str, str] | None = None,
    ) -> None:
        """Apply an approved revision decision and wait for the rollout.

        Raises:
            SwitchFailed: If any Helm or kubectl call fails.
        """
        if not decision.approved:
            raise ValueError(f"Cannot apply a rejected decision: {decision.message}")

        release = self.config.app_name
        namespace = decision.namespace
        applied = False
        try:
            if decision.strategy == RollbackStrategy.SPECIFIC_VERSION:
                logger.info("Upgrading %s in %s to image tag %s", release, namespace, decision.target_version)
                self.cluster.helm_upgrade_image(
                    release, self.config.chart, namespace, decision.target_version
                )
            else:
                logger.info(
                    "Rolling %s in %s back to revision %s",
                    release, namespace, decision.target_revision,
                )
                self.cluster.helm_rollback(release, namespace, decision.target_revision)
            applied = True
            self.cluster.rollout_status(release, namespace, self.config.rollout_timeout_seconds)
            if annotations:
                self.cluster.annotate_deployment(release, namespace, annotations)
        except ClusterCommandError as exc:
            if applied:
                state = (
                    f"{environment} was rolled back to {decision.target_label} "
                    f"but the rollout did not complete cleanly"
                )
            else:
                state = f"{environment} is still on revision {decision.current_revision}"
            raise SwitchFailed(f"rollback of {release} failed: {exc}", cluster_state=state) from exc
