"""Rollback planning: validate the rollback target before anything changes.

Blue-Green environments roll back by moving traffic to the inactive slot,
which must exist and have running, ready pods. Rolling environments roll
back through Helm release history.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from slot_control.cluster import pod_is_ready, pod_is_running
from slot_control.slots import Slot, rolling_namespace, slot_namespace

if TYPE_CHECKING:
    from slot_control.cluster import ClusterClient
    from slot_control.config import ControllerConfig

logger = logging.getLogger(__name__)


class RejectionReason(Enum):
    """Why a rollback request was rejected."""

    UNKNOWN_ACTIVE_SLOT = "cannot determine active slot"
    NAMESPACE_MISSING = "namespace missing"
    NO_RUNNING_PODS = "no running pods"
    NO_READY_PODS = "no ready pods"
    RELEASE_NOT_FOUND = "release not found"
    NO_PREVIOUS_REVISION = "no previous revision"
    REVISION_NOT_FOUND = "revision not found in history"
    REVISION_ALREADY_DEPLOYED = "revision already deployed"
    VERSION_REQUIRED = "target version required"


class RollbackStrategy(Enum):
    """How a rolling environment is rolled back."""

    PREVIOUS_VERSION = "previous-version"
    SPECIFIC_VERSION = "specific-version"
    SPECIFIC_REVISION = "specific-revision"


@dataclass(frozen=True)
class RollbackDecision:
    """Outcome of planning a Blue-Green rollback."""

    approved: bool
    environment: str
    target: Slot | None = None
    namespace: str = ""
    reason: RejectionReason | None = None
    detail: str = ""
    running_pods: int = 0
    ready_pods: int = 0

    @property
    def message(self) -> str:
        if self.approved and self.target is not None:
            return (
                f"approved: switch {self.environment} to {self.target.value} "
                f"({self.ready_pods} ready pods in {self.namespace})"
            )
        text = self.reason.value if self.reason else "rejected"
        return f"{text}: {self.detail}" if self.detail else text


class RollbackPlanner:
    """Computes the inactive slot and checks it can take traffic."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        self.cluster = cluster
        self.config = config

    def plan(self, environment: str, active_slot: Slot | None) -> RollbackDecision:
        """Plan a rollback from ``active_slot`` to its complement.

        Preconditions on the inactive slot's namespace, checked in order:
        it exists, at least one pod is Running, at least one running pod
        is Ready.
        """
        env = self.config.environment(environment)
        if active_slot is None:
            decision = RollbackDecision(
                approved=False,
                environment=env.name,
                reason=RejectionReason.UNKNOWN_ACTIVE_SLOT,
            )
            logger.info("Plan for %s: %s", env.name, decision.message)
            return decision

        target = active_slot.complement
        namespace = slot_namespace(self.config, env, target)

        def reject(reason: RejectionReason, detail: str, running: int = 0) -> RollbackDecision:
            decision = RollbackDecision(
                approved=False,
                environment=env.name,
                target=target,
                namespace=namespace,
                reason=reason,
                detail=detail,
                running_pods=running,
            )
            logger.info("Plan for %s: %s", env.name, decision.message)
            return decision

        if not self.cluster.namespace_exists(namespace):
            return reject(
                RejectionReason.NAMESPACE_MISSING,
                f"inactive namespace {namespace} does not exist",
            )

        pods = self.cluster.list_pods(namespace, self.config.pod_selector)
        running = [p for p in pods if pod_is_running(p)]
        if not running:
            return reject(
                RejectionReason.NO_RUNNING_PODS,
                f"{len(pods)} pods in {namespace}, none Running",
            )

        ready = [p for p in running if pod_is_ready(p)]
        if not ready:
            return reject(
                RejectionReason.NO_READY_PODS,
                f"{len(running)} running pods in {namespace}, none Ready",
                running=len(running),
            )

        decision = RollbackDecision(
            approved=True,
            environment=env.name,
            target=target,
            namespace=namespace,
            running_pods=len(running),
            ready_pods=len(ready),
        )
        logger.info("Plan for %s: %s", env.name, decision.message)
        return decision


@dataclass(frozen=True)
class RevisionDecision:
    """Outcome of planning a rolling (Helm history) rollback."""

    approved: bool
    environment: str
    strategy: RollbackStrategy
    namespace: str
    current_revision: int | None = None
    target_revision: int | None = None
    target_version: str = ""
    reason: RejectionReason | None = None
    detail: str = ""

    @property
    def target_label(self) -> str:
        if self.target_version:
            return f"version {self.target_version}"
        return f"revision {self.target_revision}"

    @property
    def message(self) -> str:
        if self.approved:
            return (
                f"approved: roll {self.environment} back to {self.target_label} "
                f"(deployed revision {self.current_revision})"
            )
        text = self.reason.value if self.reason else "rejected"
        return f"{text}: {self.detail}" if self.detail else text


def _deployed_revision(history: list[dict[str, Any]]) -> int:
    deployed = [int(h["revision"]) for h in history if h.get("status") == "deployed"]
    if deployed:
        return max(deployed)
    return max(int(h["revision"]) for h in history)


class RevisionPlanner:
    """Validates that a Helm revision to roll back to exists."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        self.cluster = cluster
        self.config = config

    def plan(
        self,
        environment: str,
        strategy: RollbackStrategy = RollbackStrategy.PREVIOUS_VERSION,
        target: str | None = None,
    ) -> RevisionDecision:
        env = self.config.environment(environment)
        namespace = rolling_namespace(self.config, env)
        release = self.config.app_name

        def reject(reason: RejectionReason, detail: str, current: int | None = None) -> RevisionDecision:
            decision = RevisionDecision(
                approved=False,
                environment=env.name,
                strategy=strategy,
                namespace=namespace,
                current_revision=current,
                reason=reason,
                detail=detail,
            )
            logger.info("Plan for %s: %s", env.name, decision.message)
            return decision

        if not self.cluster.namespace_exists(namespace):
            return reject(RejectionReason.NAMESPACE_MISSING, f"namespace {namespace} does not exist")

        history = self.cluster.helm_history(release, namespace)
        if not history:
            return reject(
                RejectionReason.RELEASE_NOT_FOUND,
                f"Helm release {release} not found in {namespace}",
            )

        revisions = sorted(int(h["revision"]) for h in history)
        current = _deployed_revision(history)

        if strategy == RollbackStrategy.SPECIFIC_VERSION:
            if not target:
                return reject(
                    RejectionReason.VERSION_REQUIRED,
                    "specific-version rollback needs an image tag",
                    current,
                )
            decision = RevisionDecision(
                approved=True,
                environment=env.name,
                strategy=strategy,
                namespace=namespace,
                current_revision=current,
                target_version=target,
            )
        elif strategy == RollbackStrategy.SPECIFIC_REVISION:
            if not target or not target.isdigit():
                return reject(
                    RejectionReason.REVISION_NOT_FOUND,
                    f"{target!r} is not a revision number",
                    current,
                )
            wanted = int(target)
            if wanted not in revisions:
                return reject(
                    RejectionReason.REVISION_NOT_FOUND,
                    f"revision {wanted} not in history {revisions}",
                    current,
                )
            if wanted == current:
                return reject(
                    RejectionReason.REVISION_ALREADY_DEPLOYED,
                    f"revision {wanted} is the deployed revision",
                    current,
                )
            decision = RevisionDecision(
                approved=True,
                environment=env.name,
                strategy=strategy,
                namespace=namespace,
                current_revision=current,
                target_revision=wanted,
            )
        else:
            earlier = [r for r in revisions if r < current]
            if not earlier:
                return reject(
                    RejectionReason.NO_PREVIOUS_REVISION,
                    f"revision {current} is the first revision of {release}",
                    current,
                )
            decision = RevisionDecision(
                approved=True,
                environment=env.name,
                strategy=strategy,
                namespace=namespace,
                current_revision=current,
                target_revision=max(earlier),
            )

        logger.info("Plan for %s: %s", env.name, decision.message)
        return decision
