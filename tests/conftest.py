"""Shared fixtures: an in-memory cluster standing in for kubectl/helm."""

from __future__ import annotations

import copy
import json
from typing import Any

import pytest

from slot_control.cluster import ClusterClient, ClusterCommandError
from slot_control.config import default_config


def make_pod(
    name: str,
    phase: str = "Running",
    ready: bool = True,
    app: str = "my-app",
) -> dict[str, Any]:
    return {
        "metadata": {"name": name, "labels": {"app": app}},
        "status": {
            "phase": phase,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        },
    }


def make_ingress(host: str, namespace: str, version: str = "100") -> dict[str, Any]:
    return {
        "metadata": {
            "name": "my-app-ingress",
            "namespace": "default",
            "resourceVersion": version,
            "labels": {},
            "annotations": {},
        },
        "spec": {
            "rules": [{
                "host": host,
                "http": {
                    "paths": [{
                        "path": "/(my-app/|$)(.*)",
                        "pathType": "ImplementationSpecific",
                        "backend": {
                            "service": {
                                "name": "my-app",
                                "namespace": namespace,
                                "port": {"number": 8280},
                            },
                        },
                    }],
                },
            }],
        },
    }


def make_deployment(ready: int, desired: int) -> dict[str, Any]:
    return {
        "metadata": {"name": "my-app", "annotations": {}},
        "spec": {"replicas": desired},
        "status": {"readyReplicas": ready},
    }


class FakeCluster(ClusterClient):
    """Dictionary-backed cluster with kubectl-like merge patch semantics."""

    def __init__(self) -> None:
        self.ingresses: dict[tuple[str, str], dict[str, Any]] = {}
        self.namespaces: set[str] = set()
        self.pods: dict[str, list[dict[str, Any]]] = {}
        self.deployments: dict[tuple[str, str], dict[str, Any]] = {}
        self.health: dict[str, list[str]] = {}
        self.history: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fail_patch: str | None = None
        self.fail_helm: str | None = None

    # -- helpers for tests --

    def add_namespace(self, namespace: str, pods: list[dict[str, Any]] | None = None) -> None:
        self.namespaces.add(namespace)
        self.pods[namespace] = list(pods or [])

    def set_health(self, namespace: str, *statuses: str) -> None:
        """Queue health endpoint statuses; the last one repeats."""
        self.health[namespace] = list(statuses)

    @property
    def mutations(self) -> list[tuple[Any, ...]]:
        mutating = {"patch_ingress", "annotate_deployment", "helm_rollback", "helm_upgrade_image"}
        return [c for c in self.calls if c[0] in mutating]

    # -- ClusterClient --

    def get_ingress(self, name, namespace):
        self.calls.append(("get_ingress", name, namespace))
        ingress = self.ingresses.get((namespace, name))
        return copy.deepcopy(ingress) if ingress is not None else None

    def patch_ingress(self, name, namespace, patch):
        self.calls.append(("patch_ingress", name, namespace, copy.deepcopy(patch)))
        if self.fail_patch:
            raise ClusterCommandError(["kubectl", "patch", "ingress"], 1, self.fail_patch)
        ingress = self.ingresses.get((namespace, name))
        if ingress is None:
            raise ClusterCommandError(
                ["kubectl", "patch", "ingress"], 1,
                f'Error from server (NotFound): ingresses "{name}" not found',
            )
        meta = patch.get("metadata", {})
        expected = meta.get("resourceVersion")
        if expected is not None and expected != ingress["metadata"]["resourceVersion"]:
            raise ClusterCommandError(
                ["kubectl", "patch", "ingress"], 1,
                "Error from server (Conflict): the object has been modified",
            )
        ingress["metadata"]["labels"].update(meta.get("labels", {}))
        ingress["metadata"]["annotations"].update(meta.get("annotations", {}))
        if "spec" in patch:
            ingress["spec"].update(copy.deepcopy(patch["spec"]))
        ingress["metadata"]["resourceVersion"] = str(int(ingress["metadata"]["resourceVersion"]) + 1)
        return copy.deepcopy(ingress)

    def namespace_exists(self, namespace):
        self.calls.append(("namespace_exists", namespace))
        return namespace in self.namespaces

    def list_pods(self, namespace, selector=None):
        self.calls.append(("list_pods", namespace, selector))
        pods = self.pods.get(namespace, [])
        if selector:
            key, _, value = selector.partition("=")
            pods = [p for p in pods if p["metadata"]["labels"].get(key) == value]
        return copy.deepcopy(pods)

    def get_deployment(self, name, namespace):
        self.calls.append(("get_deployment", name, namespace))
        deployment = self.deployments.get((namespace, name))
        return copy.deepcopy(deployment) if deployment is not None else None

    def annotate_deployment(self, name, namespace, annotations):
        self.calls.append(("annotate_deployment", name, namespace, dict(annotations)))
        self.deployments[(namespace, name)]["metadata"]["annotations"].update(annotations)

    def exec_in_pod(self, namespace, pod, command):
        self.calls.append(("exec_in_pod", namespace, pod, list(command)))
        queue = self.health.get(namespace)
        if not queue:
            raise ClusterCommandError(["kubectl", "exec"], 7, "curl: (7) Failed to connect")
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        return json.dumps({"status": status})

    def helm_history(self, release, namespace):
        self.calls.append(("helm_history", release, namespace))
        return copy.deepcopy(self.history.get((namespace, release), []))

    def helm_rollback(self, release, namespace, revision):
        self.calls.append(("helm_rollback", release, namespace, revision))
        if self.fail_helm:
            raise ClusterCommandError(["helm", "rollback"], 1, self.fail_helm)
        history = self.history[(namespace, release)]
        for entry in history:
            entry["status"] = "superseded"
        history.append({
            "revision": max(int(h["revision"]) for h in history) + 1,
            "status": "deployed",
            "description": f"Rollback to {revision}",
        })

    def helm_upgrade_image(self, release, chart, namespace, image_tag):
        self.calls.append(("helm_upgrade_image", release, chart, namespace, image_tag))
        if self.fail_helm:
            raise ClusterCommandError(["helm", "upgrade"], 1, self.fail_helm)

    def rollout_status(self, deployment, namespace, timeout_seconds):
        self.calls.append(("rollout_status", deployment, namespace, timeout_seconds))


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def prod_cluster(cluster):
    """prod with blue active, both slots deployed with 3 ready pods."""
    cluster.ingresses[("default", "my-app-ingress")] = make_ingress(
        "api.mydomain.com", "prod-my-app-blue"
    )
    for slot in ("blue", "green"):
        ns = f"prod-my-app-{slot}"
        cluster.add_namespace(ns, [make_pod(f"my-app-{slot}-{i}") for i in range(3)])
        cluster.deployments[(ns, "my-app")] = make_deployment(3, 3)
        cluster.set_health(ns, "UP")
    return cluster


@pytest.fixture
def dev_cluster(cluster):
    """dev (rolling) with Helm revisions 1-3, revision 3 deployed."""
    ns = "dev-my-app"
    cluster.add_namespace(ns, [make_pod("my-app-0"), make_pod("my-app-1")])
    cluster.deployments[(ns, "my-app")] = make_deployment(2, 2)
    cluster.history[(ns, "my-app")] = [
        {"revision": 1, "status": "superseded"},
        {"revision": 2, "status": "superseded"},
        {"revision": 3, "status": "deployed"},
    ]
    cluster.set_health(ns, "UP")
    return cluster
