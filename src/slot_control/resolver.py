"""Branch/tag validation gating deployments and rollbacks per environment.

Permission is an explicit decision table over (event kind, ref matches the
environment's pattern, override requested):

=========  =======  ========  =======
event      matches  override  allowed
=========  =======  ========  =======
push       yes      any       yes
push       no       any       no
manual     yes      any       yes
manual     no       yes       yes
manual     no       no        no
=========  =======  ========  =======
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from slot_control.refs import matches

if TYPE_CHECKING:
    from slot_control.config import ControllerConfig

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """What triggered the deployment or rollback."""

    PUSH = "push"
    MANUAL = "manual"

    @classmethod
    def from_github(cls, event_name: str) -> EventKind:
        """Map a GitHub Actions ``github.event_name`` to an EventKind."""
        if event_name in ("push", "create"):
            return cls.PUSH
        if event_name in ("workflow_dispatch", "manual"):
            return cls.MANUAL
        raise ValueError(f"Unsupported trigger event: {event_name!r}")


class _Outcome(Enum):
    MATCHED = "matched"
    OVERRIDDEN = "overridden"
    MISMATCH = "mismatch"


# (event, ref matches, override requested) -> outcome
_DECISION_TABLE: dict[tuple[EventKind, bool, bool], _Outcome] = {
    (EventKind.PUSH, True, False): _Outcome.MATCHED,
    (EventKind.PUSH, True, True): _Outcome.MATCHED,
    (EventKind.PUSH, False, False): _Outcome.MISMATCH,
    (EventKind.PUSH, False, True): _Outcome.MISMATCH,
    (EventKind.MANUAL, True, False): _Outcome.MATCHED,
    (EventKind.MANUAL, True, True): _Outcome.MATCHED,
    (EventKind.MANUAL, False, True): _Outcome.OVERRIDDEN,
    (EventKind.MANUAL, False, False): _Outcome.MISMATCH,
}


@dataclass(frozen=True)
class PermissionDecision:
    """Whether an action may proceed against an environment, and why."""

    allowed: bool
    reason: str
    environment: str = ""
    ref: str = ""
    overridden: bool = False


class EnvironmentResolver:
    """Decides whether a ref may deploy to or roll back an environment."""

    def __init__(self, config: ControllerConfig) -> None:
        self.config = config

    def resolve(
        self,
        ref: str,
        event_kind: EventKind,
        override_requested: bool,
        target_environment: str,
    ) -> PermissionDecision:
        """Evaluate the permission decision table.

        Args:
            ref: Branch or tag ref, fully qualified or a bare branch name.
            event_kind: Push or manual invocation.
            override_requested: Explicit bypass of branch validation. Only
                consulted for manual invocations.
            target_environment: Name of a configured environment.

        Returns:
            A PermissionDecision; never raises for a non-matching ref.

        Raises:
            KeyError: If the environment is not configured.
        """
        env = self.config.environment(target_environment)
        matched = matches(env.ref_pattern, ref)
        outcome = _DECISION_TABLE[(event_kind, matched, override_requested)]

        if outcome == _Outcome.MATCHED:
            decision = PermissionDecision(
                allowed=True,
                reason=f"ref matches {env.ref_pattern.describe()} for {env.name}",
                environment=env.name,
                ref=ref,
            )
        elif outcome == _Outcome.OVERRIDDEN:
            decision = PermissionDecision(
                allowed=True,
                reason=f"branch validation overridden for {env.name}",
                environment=env.name,
                ref=ref,
                overridden=True,
            )
        else:
            decision = PermissionDecision(
                allowed=False,
                reason=f"ref does not match required pattern for {env.name}",
                environment=env.name,
                ref=ref,
            )

        logger.info(
            "Permission for %s on %s (%s, override=%s): %s - %s",
            ref or "<no ref>",
            env.name,
            event_kind.value,
            override_requested,
            "allowed" if decision.allowed else "denied",
            decision.reason,
        )
        return decision

    def detect_environment(self, ref: str) -> str | None:
        """Return the first configured environment whose pattern matches ``ref``."""
        for name, env in self.config.environments.items():
            if matches(env.ref_pattern, ref):
                return name
        return None

    def expected_pattern(self, environment: str) -> str:
        return self.config.environment(environment).ref_pattern.describe()
