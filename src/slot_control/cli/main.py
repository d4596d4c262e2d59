"""
slotctl — command-line interface for Slot Control.

Usage:
    slotctl rollback prod --ref refs/tags/v1.4.2
    slotctl rollback dev --strategy specific-revision --target 12 --yes
    slotctl switch prod blue --yes
    slotctl status ppr
    slotctl health prod --slot green
    slotctl resolve --environment auto
    slotctl version
"""

import argparse
import getpass
import logging
import os
import sys
from typing import Callable, List, Optional

import yaml
from pydantic import ValidationError

from slot_control import __version__
from slot_control.cluster import ClusterClient, ClusterCommandError, KubectlClient
from slot_control.config import CONFIG_ENV_VAR, ControllerConfig, default_config, load_config
from slot_control.errors import HealthRejected, HealthTimeout, PermissionDenied, SlotControlError
from slot_control.health import HealthStatus
from slot_control.pipeline import RollbackPipeline, RollbackRequest
from slot_control.planner import RollbackStrategy
from slot_control.resolver import EnvironmentResolver, EventKind
from slot_control.slots import Slot

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def _non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slotctl",
        description="Blue-Green rollback and traffic switching for AKS deployments",
    )
    parser.add_argument("--config", help=f"YAML config file (default: ${CONFIG_ENV_VAR} or built-in)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    def add_cluster_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--get-credentials",
            action="store_true",
            help="Run 'az aks get-credentials' for the environment's cluster first",
        )

    def add_health_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--max-attempts", type=_positive_int, default=30, help="Health check attempts")
        p.add_argument("--interval", type=_non_negative_float, default=10, help="Seconds between attempts")

    def add_ref_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--ref", help="Git ref (default: $GITHUB_REF)")
        p.add_argument(
            "--event",
            choices=[e.value for e in EventKind],
            help="Trigger kind (default: from $GITHUB_EVENT_NAME, else manual)",
        )
        p.add_argument(
            "--override-branch-validation",
            action="store_true",
            help="Allow a manual run from a ref that does not match the environment",
        )

    # rollback
    rb = subparsers.add_parser("rollback", help="Roll an environment back")
    rb.add_argument("environment")
    rb.add_argument("--target", help="Helm revision or image tag (rolling environments)")
    rb.add_argument(
        "--strategy",
        choices=[s.value for s in RollbackStrategy],
        default=RollbackStrategy.PREVIOUS_VERSION.value,
        help="Rolling rollback strategy",
    )
    rb.add_argument("--skip-health-check", action="store_true")
    rb.add_argument(
        "--force-rollback",
        action="store_true",
        help="Roll back even if the current deployment is healthy",
    )
    rb.add_argument("--triggered-by", help="Recorded in the audit annotations")
    rb.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    add_ref_args(rb)
    add_health_args(rb)
    add_cluster_args(rb)

    # switch
    sw = subparsers.add_parser("switch", help="Route a Blue-Green environment to a slot")
    sw.add_argument("environment")
    sw.add_argument("slot", choices=[s.value for s in Slot])
    sw.add_argument("--triggered-by", help="Recorded in the audit annotations")
    sw.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    add_cluster_args(sw)

    # status
    st = subparsers.add_parser("status", help="Show active slot and pod counts")
    st.add_argument("environment")
    add_cluster_args(st)

    # health
    hc = subparsers.add_parser("health", help="Run the bounded health check")
    hc.add_argument("environment")
    hc.add_argument("--slot", choices=[s.value for s in Slot], help="Default: active slot")
    add_health_args(hc)
    add_cluster_args(hc)

    # resolve
    rs = subparsers.add_parser("resolve", help="Check whether a ref may deploy to an environment")
    rs.add_argument("--environment", default="auto", help="Environment name or 'auto'")
    add_ref_args(rs)

    # version
    subparsers.add_parser("version", help="Show version")

    return parser


def cli(
    args: Optional[List[str]] = None,
    cluster: Optional[ClusterClient] = None,
    confirm: Optional[Callable[[str], bool]] = None,
) -> int:
    """Main CLI entry point. Returns exit code.

    ``cluster`` and ``confirm`` replace the kubectl-backed client and the
    interactive prompt.
    """
    parser = _build_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    if parsed.command == "version":
        print(f"slotctl {__version__}")
        return 0

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    try:
        config = _load(parsed.config)
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    environment = getattr(parsed, "environment", None)
    if environment and environment != "auto" and environment not in config.environments:
        valid = ", ".join(config.environments)
        print(f"Invalid environment: {environment} (valid: {valid})", file=sys.stderr)
        return 2

    try:
        if parsed.command == "resolve":
            return _resolve(parsed, config)
        if cluster is None:
            cluster = _kubectl_client(config, environment, parsed.get_credentials)
        pipeline = RollbackPipeline(cluster, config)
        if parsed.command == "rollback":
            return _rollback(parsed, pipeline, confirm)
        if parsed.command == "switch":
            return _switch(parsed, pipeline, config, confirm)
        if parsed.command == "status":
            return _status(parsed, pipeline, config)
        if parsed.command == "health":
            return _health(parsed, pipeline, config)
    except SlotControlError as exc:
        logger.error("%s %s: %s", parsed.command, exc.title.lower(), exc.reason)
        print(exc.explain(), file=sys.stderr)
        return exc.exit_code
    except ClusterCommandError as exc:
        logger.error("%s failed: %s", parsed.command, exc)
        print(f"Cluster command failed: {exc}", file=sys.stderr)
        return 2

    parser.print_help()
    return 1


def main() -> None:
    sys.exit(cli())


def _load(path: Optional[str]) -> ControllerConfig:
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        return load_config(path)
    return default_config()


def _kubectl_client(
    config: ControllerConfig, environment: str, get_credentials: bool
) -> KubectlClient:
    env = config.environment(environment)
    client = KubectlClient(context=env.cluster.context, helm_timeout=config.helm_timeout)
    if get_credentials:
        client.get_credentials(env.cluster)
    return client


def _default_actor() -> str:
    actor = os.environ.get("GITHUB_ACTOR")
    if actor:
        return actor
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "unknown"


def _prompt(prompt: str) -> bool:
    print(f"WARNING: {prompt}")
    try:
        reply = input("Are you sure you want to continue? (yes/no): ")
    except EOFError:
        return False
    return reply.strip().lower() == "yes"


def _ref_and_event(parsed: argparse.Namespace) -> tuple:
    ref = parsed.ref if parsed.ref is not None else os.environ.get("GITHUB_REF", "")
    if parsed.event:
        event = EventKind(parsed.event)
    else:
        event = EventKind.from_github(os.environ.get("GITHUB_EVENT_NAME", "manual"))
    return ref, event


def _set_output(name: str, value: str) -> None:
    """Append a GitHub Actions step output when running in a workflow."""
    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        with open(output_file, "a") as f:
            f.write(f"{name}={value}\n")


def _resolve(parsed: argparse.Namespace, config: ControllerConfig) -> int:
    resolver = EnvironmentResolver(config)
    try:
        ref, event = _ref_and_event(parsed)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    environment = parsed.environment
    if environment == "auto":
        environment = resolver.detect_environment(ref)
        if environment is None:
            print(f"Auto environment detection failed: unsupported ref {ref or '<empty>'}")
            _set_output("should_deploy", "false")
            _set_output("target_environment", "unknown")
            return PermissionDenied.exit_code
        print(f"Auto-detected environment: {environment}")

    decision = resolver.resolve(ref, event, parsed.override_branch_validation, environment)
    cluster = config.environment(environment).cluster
    print(f"Environment: {environment}")
    print(f"Ref: {ref or '<empty>'} ({event.value})")
    print(f"Decision: {'allowed' if decision.allowed else 'denied'} - {decision.reason}")

    _set_output("should_deploy", "true" if decision.allowed else "false")
    _set_output("target_environment", environment)
    _set_output("aks_cluster_name", cluster.name if decision.allowed else "")
    _set_output("aks_resource_group", cluster.resource_group if decision.allowed else "")
    return 0 if decision.allowed else PermissionDenied.exit_code


def _rollback(
    parsed: argparse.Namespace,
    pipeline: RollbackPipeline,
    confirm: Optional[Callable[[str], bool]],
) -> int:
    try:
        ref, event = _ref_and_event(parsed)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    request = RollbackRequest(
        environment=parsed.environment,
        ref=ref,
        event_kind=event,
        override_branch_validation=parsed.override_branch_validation,
        target=parsed.target,
        strategy=RollbackStrategy(parsed.strategy),
        skip_health_check=parsed.skip_health_check,
        force_rollback=parsed.force_rollback,
        triggered_by=parsed.triggered_by or _default_actor(),
        max_attempts=parsed.max_attempts,
        interval_seconds=parsed.interval,
    )
    if parsed.yes:
        confirm = None
    elif confirm is None:
        confirm = _prompt

    report = pipeline.run(request, confirm=confirm)
    for line in report.summary_lines():
        print(line)
    print(f"Rollback completed for {report.environment}")
    return 0


def _switch(
    parsed: argparse.Namespace,
    pipeline: RollbackPipeline,
    config: ControllerConfig,
    confirm: Optional[Callable[[str], bool]],
) -> int:
    if not config.environment(parsed.environment).blue_green:
        print(f"{parsed.environment} uses rolling deployments and has no slots", file=sys.stderr)
        return 2
    if parsed.yes:
        confirm = None
    elif confirm is None:
        confirm = _prompt

    applied = pipeline.switch_to(
        parsed.environment,
        Slot(parsed.slot),
        triggered_by=parsed.triggered_by or _default_actor(),
        confirm=confirm,
    )
    if applied.changed:
        print(f"Traffic for {applied.environment} switched to {applied.slot.value} ({applied.namespace})")
    else:
        print(f"{applied.environment} already routes to {applied.slot.value}; nothing changed")
    return 0


def _status(parsed: argparse.Namespace, pipeline: RollbackPipeline, config: ControllerConfig) -> int:
    env = config.environment(parsed.environment)
    print(f"Environment: {env.name} ({'blue-green' if env.blue_green else 'rolling'})")
    if env.blue_green:
        active = pipeline.inspector.current_active_slot(env.name)
        print(f"Active slot: {active.value if active else 'unknown'}")
    for summary in pipeline.inspector.summarize(env.name):
        print(f"  {summary.describe()}")
    return 0


def _health(parsed: argparse.Namespace, pipeline: RollbackPipeline, config: ControllerConfig) -> int:
    if parsed.slot and not config.environment(parsed.environment).blue_green:
        print(f"{parsed.environment} uses rolling deployments and has no slots", file=sys.stderr)
        return 2
    target = pipeline.health_target(parsed.environment, Slot(parsed.slot) if parsed.slot else None)
    verdict = pipeline.verify(target, parsed.max_attempts, parsed.interval)
    print(f"Target: {target}")
    print(f"Health: {verdict.describe()}")
    if verdict.status == HealthStatus.HEALTHY:
        return 0
    if verdict.status == HealthStatus.UNHEALTHY:
        return HealthRejected.exit_code
    return HealthTimeout.exit_code
