"""Cluster control plane access through ``kubectl``, ``helm`` and ``az``.

``ClusterClient`` is the seam every component talks to. ``KubectlClient``
implements it by shelling out and parsing JSON output; tests substitute an
in-memory implementation.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from slot_control.config import ClusterRef

logger = logging.getLogger(__name__)


class ClusterCommandError(RuntimeError):
    """A cluster CLI invocation exited non-zero."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.command[:3])} failed: {detail}")

    @property
    def not_found(self) -> bool:
        """True only when the API server or Helm reported the object as absent."""
        if self.returncode in (127, -1):
            return False
        return "(NotFound)" in self.stderr or "release: not found" in self.stderr


def pod_is_running(pod: dict[str, Any]) -> bool:
    return pod.get("status", {}).get("phase") == "Running"


def pod_is_ready(pod: dict[str, Any]) -> bool:
    conditions = pod.get("status", {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


class ClusterClient(ABC):
    """Operations the controller needs from the cluster."""

    @abstractmethod
    def get_ingress(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Return the ingress manifest, or None if it does not exist."""

    @abstractmethod
    def patch_ingress(self, name: str, namespace: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Apply a JSON merge patch and return the updated ingress."""

    @abstractmethod
    def namespace_exists(self, namespace: str) -> bool: ...

    @abstractmethod
    def list_pods(self, namespace: str, selector: str | None = None) -> list[dict[str, Any]]: ...

    @abstractmethod
    def get_deployment(self, name: str, namespace: str) -> dict[str, Any] | None: ...

    @abstractmethod
    def annotate_deployment(
        self, name: str, namespace: str, annotations: dict[str, str]
    ) -> None: ...

    @abstractmethod
    def exec_in_pod(self, namespace: str, pod: str, command: Sequence[str]) -> str:
        """Run a command inside a pod and return its stdout."""

    @abstractmethod
    def helm_history(self, release: str, namespace: str) -> list[dict[str, Any]]:
        """Return the release history, oldest first; empty if the release is unknown."""

    @abstractmethod
    def helm_rollback(self, release: str, namespace: str, revision: int) -> None: ...

    @abstractmethod
    def helm_upgrade_image(
        self, release: str, chart: str, namespace: str, image_tag: str
    ) -> None: ...

    @abstractmethod
    def rollout_status(self, deployment: str, namespace: str, timeout_seconds: int) -> None:
        """Block until the deployment rollout finishes or the timeout expires."""


class KubectlClient(ClusterClient):
    """ClusterClient backed by the ``kubectl``, ``helm`` and ``az`` binaries.

    Args:
        context: Kubeconfig context to target; the current context when None.
        helm_timeout: Value passed to ``helm --timeout`` for waiting operations.
        command_timeout: Seconds before a single non-waiting call is abandoned.
        runner: Replacement for ``subprocess.run``.
    """

    def __init__(
        self,
        context: str | None = None,
        helm_timeout: str = "10m",
        command_timeout: int = 120,
        runner: Callable[..., subprocess.CompletedProcess[str]] | None = None,
    ) -> None:
        self.context = context
        self.helm_timeout = helm_timeout
        self.command_timeout = command_timeout
        self._runner = runner or subprocess.run

    # -- plumbing --

    def _run(self, cmd: list[str], timeout: int | None = None) -> str:
        logger.debug("+ %s", " ".join(cmd))
        try:
            result = self._runner(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ClusterCommandError(cmd, 127, f"{cmd[0]}: command not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise ClusterCommandError(cmd, -1, f"timed out after {exc.timeout}s") from exc
        if result.returncode != 0:
            raise ClusterCommandError(cmd, result.returncode, result.stderr or "")
        return result.stdout

    def _kubectl(self, *args: str, timeout: int | None = None) -> str:
        cmd = ["kubectl"]
        if self.context:
            cmd += ["--context", self.context]
        return self._run(cmd + list(args), timeout=timeout)

    def _helm(self, *args: str, timeout: int | None = None) -> str:
        cmd = ["helm"]
        if self.context:
            cmd += ["--kube-context", self.context]
        return self._run(cmd + list(args), timeout=timeout)

    def _get_json(self, *args: str) -> dict[str, Any] | None:
        try:
            out = self._kubectl("get", *args, "-o", "json")
        except ClusterCommandError as exc:
            if exc.not_found:
                return None
            raise
        return json.loads(out)

    # -- credentials --

    def get_credentials(self, cluster: ClusterRef) -> None:
        """Merge AKS credentials for ``cluster`` into the local kubeconfig."""
        logger.info(
            "Fetching credentials for %s (resource group %s)",
            cluster.name,
            cluster.resource_group,
        )
        self._run([
            "az", "aks", "get-credentials",
            "--resource-group", cluster.resource_group,
            "--name", cluster.name,
            "--overwrite-existing",
        ])

    # -- ClusterClient --

    def get_ingress(self, name: str, namespace: str) -> dict[str, Any] | None:
        return self._get_json("ingress", name, "-n", namespace)

    def patch_ingress(self, name: str, namespace: str, patch: dict[str, Any]) -> dict[str, Any]:
        out = self._kubectl(
            "patch", "ingress", name, "-n", namespace,
            "--type=merge", "-p", json.dumps(patch), "-o", "json",
        )
        return json.loads(out)

    def namespace_exists(self, namespace: str) -> bool:
        return self._get_json("namespace", namespace) is not None

    def list_pods(self, namespace: str, selector: str | None = None) -> list[dict[str, Any]]:
        args = ["pods", "-n", namespace]
        if selector:
            args += ["-l", selector]
        data = self._get_json(*args)
        return list((data or {}).get("items", []))

    def get_deployment(self, name: str, namespace: str) -> dict[str, Any] | None:
        return self._get_json("deployment", name, "-n", namespace)

    def annotate_deployment(
        self, name: str, namespace: str, annotations: dict[str, str]
    ) -> None:
        pairs = [f"{key}={value}" for key, value in annotations.items()]
        self._kubectl("annotate", "deployment", name, "-n", namespace, *pairs, "--overwrite")

    def exec_in_pod(self, namespace: str, pod: str, command: Sequence[str]) -> str:
        return self._kubectl("exec", "-n", namespace, pod, "--", *command)

    def helm_history(self, release: str, namespace: str) -> list[dict[str, Any]]:
        try:
            out = self._helm("history", release, "-n", namespace, "-o", "json")
        except ClusterCommandError as exc:
            if exc.not_found:
                return []
            raise
        return list(json.loads(out or "[]"))

    def helm_rollback(self, release: str, namespace: str, revision: int) -> None:
        self._helm(
            "rollback", release, str(revision), "-n", namespace,
            "--wait", "--timeout", self.helm_timeout,
            timeout=_duration_seconds(self.helm_timeout) + 60,
        )

    def helm_upgrade_image(
        self, release: str, chart: str, namespace: str, image_tag: str
    ) -> None:
        self._helm(
            "upgrade", release, chart, "-n", namespace,
            "--reuse-values", "--set", f"image.tag={image_tag}",
            "--wait", "--timeout", self.helm_timeout,
            timeout=_duration_seconds(self.helm_timeout) + 60,
        )

    def rollout_status(self, deployment: str, namespace: str, timeout_seconds: int) -> None:
        self._kubectl(
            "rollout", "status", f"deployment/{deployment}", "-n", namespace,
            f"--timeout={timeout_seconds}s",
            timeout=timeout_seconds + 30,
        )


def _duration_seconds(duration: str) -> int:
    """Convert a Helm duration such as ``10m`` or ``90s`` to seconds."""
    units = {"s": 1, "m": 60, "h": 3600}
    if duration and duration[-1] in units and duration[:-1].isdigit():
        return int(duration[:-1]) * units[duration[-1]]
    if duration.isdigit():
        return int(duration)
    raise ValueError(f"Unsupported duration: {duration!r}")
