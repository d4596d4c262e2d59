"""Slot Control — Blue-Green rollback and traffic switching for AKS deployments.

Decides whether a deployment action is allowed for a ref, finds which of an
environment's two slots (blue/green) currently receives traffic, checks the
other slot can take it, moves the ingress, and verifies the result.

Core concepts
-------------
* **Environment** — dev, sqe (rolling) and ppr, prod (Blue-Green), each bound
  to a branch or tag pattern and an AKS cluster.
* **Slot** — ``blue`` or ``green``; which one is active is read live from
  the ingress every time.
* **Rolling rollback** — environments without slots roll back through Helm
  release history instead.

Quick start::

    from slot_control import RollbackPipeline, RollbackRequest, default_config
    from slot_control.cluster import KubectlClient

    pipeline = RollbackPipeline(KubectlClient(), default_config())
    report = pipeline.run(RollbackRequest("prod", ref="refs/tags/v1.4.2"))
"""

from slot_control.config import ControllerConfig, default_config, load_config
from slot_control.pipeline import RollbackPipeline, RollbackReport, RollbackRequest
from slot_control.resolver import EnvironmentResolver, EventKind, PermissionDecision
from slot_control.slots import Slot

__all__ = [
    "ControllerConfig",
    "EnvironmentResolver",
    "EventKind",
    "PermissionDecision",
    "RollbackPipeline",
    "RollbackReport",
    "RollbackRequest",
    "Slot",
    "default_config",
    "load_config",
]

__version__ = "0.1.0"
