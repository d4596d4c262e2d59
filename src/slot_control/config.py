"""Controller configuration: environments, clusters and application naming.

Loaded once at process start (YAML file or built-in defaults) and passed
explicitly to every component.

Example YAML::

    app_name: my-app
    service_port: 8280
    environments:
      prod:
        blue_green: true
        host: api.mydomain.com
        ref_pattern: {kind: tag_any}
        cluster: {name: aks-platform-prod, resource_group: rg-platform-prod}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from slot_control.refs import BranchPrefix, ExactBranch, RefPattern, TagAny

CONFIG_ENV_VAR = "SLOTCTL_CONFIG"


class ClusterRef(BaseModel):
    """The AKS cluster an environment lives in."""

    name: str
    resource_group: str
    context: str | None = None  # kubeconfig context; current context when unset


class EnvironmentConfig(BaseModel):
    """A single deployment environment."""

    name: str
    blue_green: bool = False
    host: str = ""
    ref_pattern: RefPattern
    cluster: ClusterRef
    namespace: str = ""  # rolling environments only; defaults to "{name}-{app}"


class ControllerConfig(BaseModel):
    """Top-level configuration shared by every component."""

    app_name: str = "my-app"
    ingress_name: str = ""
    ingress_namespace: str = "default"
    service_port: int = Field(default=8280, gt=0, lt=65536)
    ingress_path: str = "/(my-app/|$)(.*)"
    health_path: str = "/my-app/actuator/health"
    chart: str = ""
    helm_timeout: str = "10m"
    rollout_timeout_seconds: int = Field(default=300, gt=0)
    environments: dict[str, EnvironmentConfig] = Field(default_factory=dict)

    @field_validator("environments", mode="before")
    @classmethod
    def _name_environments(cls, value: Any) -> Any:
        if isinstance(value, dict):
            named = {}
            for key, env in value.items():
                if isinstance(env, dict):
                    env = {"name": key, **env}
                named[key] = env
            return named
        return value

    @model_validator(mode="after")
    def _fill_defaults(self) -> ControllerConfig:
        if not self.ingress_name:
            self.ingress_name = f"{self.app_name}-ingress"
        if not self.chart:
            self.chart = f"helm/{self.app_name}"
        for key, env in self.environments.items():
            if env.name != key:
                msg = f"environment key '{key}' does not match its name '{env.name}'"
                raise ValueError(msg)
            if env.blue_green and not env.host:
                raise ValueError(f"blue-green environment '{key}' needs a host")
        return self

    @property
    def pod_selector(self) -> str:
        return f"app={self.app_name}"

    def environment(self, name: str) -> EnvironmentConfig:
        """Look up an environment by name.

        Raises:
            KeyError: If the environment is not configured.
        """
        try:
            return self.environments[name]
        except KeyError:
            valid = ", ".join(self.environments) or "none"
            raise KeyError(f"Unknown environment '{name}' (valid: {valid})") from None


def _default_environments() -> dict[str, EnvironmentConfig]:
    def cluster(env: str) -> ClusterRef:
        return ClusterRef(name=f"aks-platform-{env}", resource_group=f"rg-platform-{env}")

    return {
        "dev": EnvironmentConfig(
            name="dev", ref_pattern=ExactBranch(name="dev"), cluster=cluster("dev"),
        ),
        "sqe": EnvironmentConfig(
            name="sqe", ref_pattern=ExactBranch(name="main"), cluster=cluster("sqe"),
        ),
        "ppr": EnvironmentConfig(
            name="ppr",
            blue_green=True,
            host="preprod.mydomain.com",
            ref_pattern=BranchPrefix(prefix="release/"),
            cluster=cluster("ppr"),
        ),
        "prod": EnvironmentConfig(
            name="prod",
            blue_green=True,
            host="api.mydomain.com",
            ref_pattern=TagAny(),
            cluster=cluster("prod"),
        ),
    }


def default_config() -> ControllerConfig:
    """Built-in configuration with the dev/sqe/ppr/prod environments."""
    return ControllerConfig(environments=_default_environments())


def load_config(path: str | Path) -> ControllerConfig:
    """Load configuration from a YAML file.

    Environments omitted from the file fall back to the built-in ones.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A validated ControllerConfig.
    """
    raw: dict[str, Any] = yaml.safe_load(Path(path).read_text()) or {}
    environments = {
        key: env.model_dump(exclude={"name"})
        for key, env in _default_environments().items()
    }
    environments.update(raw.get("environments") or {})
    raw["environments"] = environments
    return ControllerConfig.model_validate(raw)
