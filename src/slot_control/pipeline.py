"""Rollback pipeline: resolve -> inspect -> plan -> switch -> verify.

Stages run strictly in order, each on freshly read cluster state. The first
rejection or failure is raised as a ``SlotControlError`` naming the failed
check and the state the cluster was left in. The only retry happens inside
the health verifier.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from slot_control.errors import (
    AmbiguousState,
    HealthRejected,
    HealthTimeout,
    PermissionDenied,
    PreconditionFailed,
    RollbackCancelled,
)
from slot_control.health import ClusterProbe, HealthStatus, HealthVerifier
from slot_control.planner import RevisionPlanner, RollbackPlanner, RollbackStrategy
from slot_control.resolver import EnvironmentResolver, EventKind
from slot_control.slots import DeploymentTarget, SlotInspector
from slot_control.switcher import RevisionRoller, TrafficSwitcher
from slot_control.telemetry import ATTR_OUTCOME, ATTR_SLOT, get_tracer, pipeline_span

if TYPE_CHECKING:
    from collections.abc import Callable

    from opentelemetry.trace import TracerProvider

    from slot_control.cluster import ClusterClient
    from slot_control.config import ControllerConfig, EnvironmentConfig
    from slot_control.health import HealthVerdict
    from slot_control.planner import RevisionDecision
    from slot_control.resolver import PermissionDecision
    from slot_control.slots import Slot
    from slot_control.switcher import AppliedRouting

logger = logging.getLogger(__name__)

AUDIT_PREFIX = "rollback.deployment.kubernetes.io/"
BLUE_GREEN_STRATEGY = "blue-green"
NO_CHANGES = "no changes were made"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def audit_annotations(
    strategy: str, target: str, triggered_by: str, now: datetime
) -> dict[str, str]:
    """Annotations recording who rolled what back, when."""
    return {
        f"{AUDIT_PREFIX}timestamp": now.isoformat(timespec="seconds"),
        f"{AUDIT_PREFIX}strategy": strategy,
        f"{AUDIT_PREFIX}target": target,
        f"{AUDIT_PREFIX}triggered-by": triggered_by,
    }


@dataclass
class RollbackRequest:
    """Operator or CI input to a rollback."""

    environment: str
    ref: str = ""
    event_kind: EventKind = EventKind.MANUAL
    override_branch_validation: bool = False
    target: str | None = None
    strategy: RollbackStrategy = RollbackStrategy.PREVIOUS_VERSION
    skip_health_check: bool = False
    force_rollback: bool = False
    triggered_by: str = "unknown"
    max_attempts: int = 30
    interval_seconds: float = 10

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise PreconditionFailed(
                f"max_attempts must be at least 1, got {self.max_attempts}",
                cluster_state=NO_CHANGES,
            )
        if self.interval_seconds < 0:
            raise PreconditionFailed(
                f"interval_seconds must not be negative, got {self.interval_seconds}",
                cluster_state=NO_CHANGES,
            )


@dataclass
class RollbackReport:
    """What a successful rollback did."""

    environment: str
    strategy: str
    target: str
    namespace: str
    permission: PermissionDecision
    previous_slot: Slot | None = None
    routing: AppliedRouting | None = None
    revision: RevisionDecision | None = None
    verdict: HealthVerdict | None = None
    notes: list[str] = field(default_factory=list)

    def summary_lines(self) -> list[str]:
        lines = [
            f"Environment: {self.environment}",
            f"Strategy: {self.strategy}",
            f"Target: {self.target}",
            f"Namespace: {self.namespace}",
            f"Permission: {self.permission.reason}",
        ]
        if self.previous_slot is not None:
            lines.append(f"Previous slot: {self.previous_slot.value}")
        if self.routing is not None and not self.routing.changed:
            lines.append("Routing already pointed at the target; nothing was changed")
        if self.verdict is not None:
            lines.append(f"Health: {self.verdict.describe()}")
        else:
            lines.append("Health: not checked")
        lines.extend(self.notes)
        return lines


class RollbackPipeline:
    """Wires the resolver, inspector, planners, switchers and verifier together.

    Args:
        cluster: Cluster access shared by every stage.
        config: Controller configuration.
        sleep: Passed to the health verifier.
        clock: Passed to the health verifier.
        now: Wall clock for audit timestamps.
        tracer_provider: OpenTelemetry provider; the global one when None.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: ControllerConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
        tracer_provider: TracerProvider | None = None,
    ) -> None:
        self.config = config
        self.resolver = EnvironmentResolver(config)
        self.inspector = SlotInspector(cluster, config)
        self.planner = RollbackPlanner(cluster, config)
        self.revision_planner = RevisionPlanner(cluster, config)
        self.switcher = TrafficSwitcher(cluster, config, self.inspector, now=now)
        self.roller = RevisionRoller(cluster, config)
        self.probe = ClusterProbe(cluster, config)
        self.verifier = HealthVerifier(self.probe, sleep=sleep, clock=clock)
        self._now = now
        self._tracer = get_tracer(tracer_provider)

    # -- rollback --

    def run(
        self,
        request: RollbackRequest,
        confirm: Callable[[str], bool] | None = None,
    ) -> RollbackReport:
        """Run a rollback end to end.

        Args:
            request: What to roll back and how.
            confirm: Asked once, after planning and before any mutation.
                Returning False cancels the rollback.

        Raises:
            SlotControlError: The first rejection or failure.
        """
        env = self.config.environment(request.environment)
        permission = self._authorize(request)
        if env.blue_green:
            return self._run_blue_green(env, request, permission, confirm)
        return self._run_rolling(env, request, permission, confirm)

    def _authorize(self, request: RollbackRequest) -> PermissionDecision:
        with pipeline_span(self._tracer, "resolve", request.environment) as span:
            decision = self.resolver.resolve(
                request.ref,
                request.event_kind,
                request.override_branch_validation,
                request.environment,
            )
            span.set_attribute(ATTR_OUTCOME, "allowed" if decision.allowed else "denied")
            if not decision.allowed:
                expected = self.resolver.expected_pattern(request.environment)
                raise PermissionDenied(
                    f"{decision.reason} (expected {expected}, got {request.ref or 'no ref'}); "
                    "use a matching ref or request an override on a manual run",
                    cluster_state=NO_CHANGES,
                )
        return decision

    def _run_blue_green(
        self,
        env: EnvironmentConfig,
        request: RollbackRequest,
        permission: PermissionDecision,
        confirm: Callable[[str], bool] | None,
    ) -> RollbackReport:
        if request.target:
            raise PreconditionFailed(
                "a target revision or version only applies to rolling environments; "
                f"{env.name} always rolls back to its inactive slot",
                cluster_state=NO_CHANGES,
            )

        with pipeline_span(self._tracer, "inspect", env.name) as span:
            routing = self.inspector.read_routing(env.name)
            if routing.slot is None:
                raise AmbiguousState(
                    f"cannot determine active slot: ingress backend "
                    f"{routing.backend_namespace or 'is missing or ambiguous'} for {env.host} "
                    f"matches neither {env.name}-{self.config.app_name}-blue nor -green",
                    cluster_state=(
                        f"{NO_CHANGES}; inspect with: kubectl describe ingress "
                        f"{self.config.ingress_name} -n {self.config.ingress_namespace}"
                    ),
                )
            span.set_attribute(ATTR_SLOT, routing.slot.value)
        active = routing.slot

        self._check_serving(
            DeploymentTarget.for_slot(self.config, env, active), request.force_rollback
        )

        with pipeline_span(self._tracer, "plan", env.name, slot=active.complement.value) as span:
            decision = self.planner.plan(env.name, active)
            span.set_attribute(ATTR_OUTCOME, "approved" if decision.approved else "rejected")
            if not decision.approved or decision.target is None:
                raise PreconditionFailed(
                    decision.message,
                    cluster_state=f"{NO_CHANGES}; traffic remains on {active.value}",
                )
        target_slot = decision.target

        self._confirm(
            confirm,
            f"Switch {env.name} traffic from {active.value} to {target_slot.value} "
            f"({decision.namespace})?",
        )

        annotations = audit_annotations(
            BLUE_GREEN_STRATEGY, target_slot.value, request.triggered_by, self._now()
        )
        with pipeline_span(self._tracer, "switch", env.name, slot=target_slot.value) as span:
            applied = self.switcher.switch(
                env.name,
                target_slot,
                expected_version=routing.resource_version,
                annotations=annotations,
            )
            span.set_attribute(ATTR_OUTCOME, "switched" if applied.changed else "unchanged")

        report = RollbackReport(
            environment=env.name,
            strategy=BLUE_GREEN_STRATEGY,
            target=target_slot.value,
            namespace=decision.namespace,
            permission=permission,
            previous_slot=active,
            routing=applied,
        )
        state = (
            f"traffic already switched to slot {target_slot.value} ({decision.namespace}); "
            f"revert with: slotctl switch {env.name} {active.value} --yes"
        )
        self._verify_after(
            DeploymentTarget.for_slot(self.config, env, target_slot), request, report, state
        )
        return report

    def _run_rolling(
        self,
        env: EnvironmentConfig,
        request: RollbackRequest,
        permission: PermissionDecision,
        confirm: Callable[[str], bool] | None,
    ) -> RollbackReport:
        with pipeline_span(self._tracer, "plan", env.name, strategy=request.strategy.value) as span:
            decision = self.revision_planner.plan(env.name, request.strategy, request.target)
            span.set_attribute(ATTR_OUTCOME, "approved" if decision.approved else "rejected")
            if not decision.approved:
                current = decision.current_revision
                state = NO_CHANGES if current is None else f"{NO_CHANGES}; {env.name} remains on revision {current}"
                raise PreconditionFailed(decision.message, cluster_state=state)

        target = DeploymentTarget.for_rolling(self.config, env)
        self._check_serving(target, request.force_rollback)

        self._confirm(
            confirm,
            f"Roll {env.name} ({decision.namespace}) back from revision "
            f"{decision.current_revision} to {decision.target_label}?",
        )

        annotations = audit_annotations(
            request.strategy.value,
            decision.target_version or str(decision.target_revision),
            request.triggered_by,
            self._now(),
        )
        with pipeline_span(self._tracer, "switch", env.name, strategy=request.strategy.value):
            self.roller.roll_back(env.name, decision, annotations)

        report = RollbackReport(
            environment=env.name,
            strategy=request.strategy.value,
            target=decision.target_label,
            namespace=decision.namespace,
            permission=permission,
            revision=decision,
        )
        state = (
            f"{env.name} was rolled back to {decision.target_label}; roll forward with: "
            f"helm rollback {self.config.app_name} {decision.current_revision} -n {decision.namespace}"
        )
        self._verify_after(target, request, report, state)
        return report

    # -- manual switch --

    def switch_to(
        self,
        environment: str,
        slot: Slot,
        triggered_by: str = "unknown",
        confirm: Callable[[str], bool] | None = None,
    ) -> AppliedRouting:
        """Route a Blue-Green environment to ``slot`` after checking it can serve.

        Used to revert a rollback by hand. Switching to the active slot is a
        no-op.
        """
        env = self.config.environment(environment)
        with pipeline_span(self._tracer, "inspect", env.name) as span:
            routing = self.inspector.read_routing(env.name)
            span.set_attribute(ATTR_SLOT, routing.slot.value if routing.slot else "unknown")

        if routing.slot != slot:
            with pipeline_span(self._tracer, "plan", env.name, slot=slot.value):
                decision = self.planner.plan(env.name, slot.complement)
                if not decision.approved:
                    raise PreconditionFailed(
                        decision.message,
                        cluster_state=f"{NO_CHANGES}; routing still points at "
                        f"{routing.backend_namespace or 'an unknown backend'}",
                    )
            self._confirm(confirm, f"Switch {env.name} traffic to {slot.value}?")

        annotations = audit_annotations("manual-switch", slot.value, triggered_by, self._now())
        with pipeline_span(self._tracer, "switch", env.name, slot=slot.value):
            return self.switcher.switch(
                env.name, slot, expected_version=routing.resource_version, annotations=annotations
            )

    # -- health --

    def health_target(self, environment: str, slot: Slot | None = None) -> DeploymentTarget:
        """The workload to probe: a given slot, the active slot, or the rolling namespace."""
        env = self.config.environment(environment)
        if not env.blue_green:
            return DeploymentTarget.for_rolling(self.config, env)
        if slot is None:
            slot = self.inspector.current_active_slot(environment)
            if slot is None:
                raise AmbiguousState(
                    f"cannot determine active slot of {environment}",
                    cluster_state=NO_CHANGES,
                )
        return DeploymentTarget.for_slot(self.config, env, slot)

    def verify(
        self, target: DeploymentTarget, max_attempts: int = 30, interval_seconds: float = 10
    ) -> HealthVerdict:
        with pipeline_span(
            self._tracer, "verify", target.environment,
            slot=target.slot.value if target.slot else None,
        ) as span:
            verdict = self.verifier.verify(target, max_attempts, interval_seconds)
            span.set_attribute(ATTR_OUTCOME, verdict.status.value)
        return verdict

    # -- helpers --

    def _check_serving(self, target: DeploymentTarget, force: bool) -> None:
        counts = self.probe.replicas(target)
        if counts.matched and not force:
            raise PreconditionFailed(
                f"current deployment {target} is healthy ({counts.ready}/{counts.desired} "
                "replicas ready); use force rollback to roll back anyway",
                cluster_state=NO_CHANGES,
            )
        if force:
            logger.warning(
                "Force rollback: current deployment %s has %d/%d replicas ready",
                target, counts.ready, counts.desired,
            )
        else:
            logger.info(
                "Current deployment %s is degraded (%d/%d replicas ready); proceeding",
                target, counts.ready, counts.desired,
            )

    @staticmethod
    def _confirm(confirm: Callable[[str], bool] | None, prompt: str) -> None:
        if confirm is not None and not confirm(prompt):
            raise RollbackCancelled("operator declined the confirmation", cluster_state=NO_CHANGES)

    def _verify_after(
        self,
        target: DeploymentTarget,
        request: RollbackRequest,
        report: RollbackReport,
        state: str,
    ) -> None:
        if request.skip_health_check:
            logger.warning("Health check skipped for %s", target)
            report.notes.append("Health check skipped on request; verify the application manually")
            return

        verdict = self.verify(target, request.max_attempts, request.interval_seconds)
        report.verdict = verdict
        if verdict.status == HealthStatus.UNHEALTHY:
            raise HealthRejected(
                f"{target} is ready but its health endpoint reported "
                f"{verdict.endpoint_status} ({verdict.describe()})",
                cluster_state=f"{state}. This rollback may have made things worse; consider switching back",
            )
        if verdict.status == HealthStatus.INDETERMINATE:
            raise HealthTimeout(
                f"no definite health result for {target} ({verdict.describe()})",
                cluster_state=f"{state}. Investigate before relying on this rollback",
            )
