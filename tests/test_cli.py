"""Tests for CLI."""

import logging

import pytest

from slot_control.cli.main import cli


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("GITHUB_REF", "GITHUB_EVENT_NAME", "GITHUB_OUTPUT", "GITHUB_ACTOR", "SLOTCTL_CONFIG"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def degraded_prod(prod_cluster):
    prod_cluster.deployments[("prod-my-app-blue", "my-app")]["status"]["readyReplicas"] = 0
    return prod_cluster


def read_outputs(path):
    return dict(line.split("=", 1) for line in path.read_text().splitlines())


class TestCLI:
    def test_version(self, capsys):
        assert cli(["version"]) == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_no_args(self):
        assert cli([]) == 1

    def test_unknown_environment(self, capsys, cluster):
        assert cli(["status", "qa"], cluster=cluster) == 2
        assert "Invalid environment: qa" in capsys.readouterr().err

    def test_invalid_config_file(self, capsys, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("service_port: -1\n")
        assert cli(["--config", str(path), "status", "prod"]) == 2
        assert "Invalid configuration" in capsys.readouterr().err

    def test_config_from_environment_variable(self, capsys, monkeypatch, tmp_path, cluster):
        path = tmp_path / "slotctl.yaml"
        path.write_text("app_name: billing\n")
        monkeypatch.setenv("SLOTCTL_CONFIG", str(path))
        cluster.add_namespace("dev-billing")
        assert cli(["status", "dev"], cluster=cluster) == 0
        assert "dev-billing" in capsys.readouterr().out


class TestResolveCommand:
    def test_allowed(self, capsys, monkeypatch, tmp_path):
        outputs = tmp_path / "outputs"
        monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))
        assert cli(["resolve", "--environment", "prod", "--ref", "refs/tags/v2.0.0", "--event", "push"]) == 0
        out = capsys.readouterr().out
        assert "Decision: allowed - ref matches any tag for prod" in out
        assert read_outputs(outputs) == {
            "should_deploy": "true",
            "target_environment": "prod",
            "aks_cluster_name": "aks-platform-prod",
            "aks_resource_group": "rg-platform-prod",
        }

    def test_denied(self, capsys):
        assert cli(["resolve", "--environment", "prod", "--ref", "refs/heads/main"]) == 3
        assert "ref does not match required pattern for prod" in capsys.readouterr().out

    def test_override(self, capsys):
        code = cli([
            "resolve", "--environment", "prod", "--ref", "refs/heads/main",
            "--override-branch-validation",
        ])
        assert code == 0
        assert "branch validation overridden for prod" in capsys.readouterr().out

    def test_auto_detect_from_github_ref(self, capsys, monkeypatch, tmp_path):
        outputs = tmp_path / "outputs"
        monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))
        monkeypatch.setenv("GITHUB_REF", "refs/heads/release/3.1")
        monkeypatch.setenv("GITHUB_EVENT_NAME", "push")
        assert cli(["resolve"]) == 0
        assert "Auto-detected environment: ppr" in capsys.readouterr().out
        assert read_outputs(outputs)["target_environment"] == "ppr"

    def test_auto_detect_fails(self, capsys, monkeypatch, tmp_path):
        outputs = tmp_path / "outputs"
        monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))
        assert cli(["resolve", "--ref", "refs/heads/feature/x"]) == 3
        assert read_outputs(outputs) == {"should_deploy": "false", "target_environment": "unknown"}

    def test_unsupported_event(self, capsys, monkeypatch):
        monkeypatch.setenv("GITHUB_EVENT_NAME", "pull_request")
        assert cli(["resolve", "--ref", "refs/tags/v1"]) == 2


class TestRollbackCommand:
    def test_rollback(self, capsys, degraded_prod):
        code = cli(
            ["rollback", "prod", "--ref", "refs/tags/v1.4.2", "--triggered-by", "alice", "--yes"],
            cluster=degraded_prod,
        )
        assert code == 0
        out = capsys.readouterr().out
        assert "Target: green" in out
        assert "Rollback completed for prod" in out

    def test_denied(self, capsys, degraded_prod):
        code = cli(["rollback", "prod", "--ref", "refs/heads/main", "--yes"], cluster=degraded_prod)
        assert code == 3
        err = capsys.readouterr().err
        assert "Permission denied" in err
        assert "Cluster state: no changes were made" in err

    def test_denied_is_logged(self, caplog, degraded_prod):
        with caplog.at_level(logging.ERROR, logger="slot_control.cli.main"):
            cli(["rollback", "prod", "--ref", "refs/heads/main", "--yes"], cluster=degraded_prod)
        (record,) = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert "rollback permission denied" in record.getMessage()

    @pytest.mark.parametrize("flag, value", [("--max-attempts", "0"), ("--interval", "-1")])
    def test_bad_health_arguments_rejected_before_switch(self, capsys, degraded_prod, flag, value):
        with pytest.raises(SystemExit) as excinfo:
            cli(["rollback", "prod", "--ref", "refs/tags/v1", "--yes", flag, value], cluster=degraded_prod)
        assert excinfo.value.code == 2
        assert degraded_prod.mutations == []

    def test_precondition_failed(self, capsys, degraded_prod):
        degraded_prod.pods["prod-my-app-green"] = []
        code = cli(["rollback", "prod", "--ref", "refs/tags/v1", "--yes"], cluster=degraded_prod)
        assert code == 5
        assert "no running pods" in capsys.readouterr().err

    def test_confirmation_declined(self, capsys, degraded_prod):
        code = cli(
            ["rollback", "prod", "--ref", "refs/tags/v1"],
            cluster=degraded_prod,
            confirm=lambda prompt: False,
        )
        assert code == 1
        assert degraded_prod.mutations == []

    def test_prompt_requires_literal_yes(self, capsys, monkeypatch, degraded_prod):
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        code = cli(["rollback", "prod", "--ref", "refs/tags/v1"], cluster=degraded_prod)
        assert code == 1

    def test_health_rejected(self, capsys, degraded_prod):
        degraded_prod.set_health("prod-my-app-green", "DOWN")
        code = cli(["rollback", "prod", "--ref", "refs/tags/v1", "--yes"], cluster=degraded_prod)
        assert code == 7
        assert "slotctl switch prod blue --yes" in capsys.readouterr().err

    def test_rolling_with_target(self, capsys, dev_cluster):
        code = cli(
            [
                "rollback", "dev", "--ref", "dev", "--strategy", "specific-revision",
                "--target", "1", "--force-rollback", "--yes",
            ],
            cluster=dev_cluster,
        )
        assert code == 0
        assert ("helm_rollback", "my-app", "dev-my-app", 1) in dev_cluster.calls


class TestSwitchCommand:
    def test_switch(self, capsys, prod_cluster):
        assert cli(["switch", "prod", "green", "--yes"], cluster=prod_cluster) == 0
        assert "Traffic for prod switched to green (prod-my-app-green)" in capsys.readouterr().out

    def test_already_active(self, capsys, prod_cluster):
        assert cli(["switch", "prod", "blue", "--yes"], cluster=prod_cluster) == 0
        assert "already routes to blue" in capsys.readouterr().out
        assert prod_cluster.mutations == []

    def test_rolling_environment(self, capsys, dev_cluster):
        assert cli(["switch", "dev", "green", "--yes"], cluster=dev_cluster) == 2

    def test_patch_failure(self, capsys, prod_cluster):
        prod_cluster.fail_patch = "Error from server (Forbidden)"
        assert cli(["switch", "prod", "green", "--yes"], cluster=prod_cluster) == 6


class TestStatusAndHealth:
    def test_status(self, capsys, prod_cluster):
        assert cli(["status", "prod"], cluster=prod_cluster) == 0
        out = capsys.readouterr().out
        assert "Environment: prod (blue-green)" in out
        assert "Active slot: blue" in out
        assert "blue (active): 3/3 ready" in out

    def test_status_rolling(self, capsys, dev_cluster):
        assert cli(["status", "dev"], cluster=dev_cluster) == 0
        assert "Environment: dev (rolling)" in capsys.readouterr().out

    def test_health_active_slot(self, capsys, prod_cluster):
        assert cli(["health", "prod"], cluster=prod_cluster) == 0
        out = capsys.readouterr().out
        assert "Target: prod/prod-my-app-blue" in out
        assert "Health: healthy" in out

    def test_health_unhealthy_slot(self, capsys, prod_cluster):
        prod_cluster.set_health("prod-my-app-green", "DOWN")
        assert cli(["health", "prod", "--slot", "green"], cluster=prod_cluster) == 7

    def test_health_timeout(self, capsys, prod_cluster):
        prod_cluster.set_health("prod-my-app-green", "STARTING")
        code = cli(["health", "prod", "--slot", "green", "--max-attempts", "1"], cluster=prod_cluster)
        assert code == 8

    def test_health_unknown_active_slot(self, capsys, cluster):
        assert cli(["health", "prod"], cluster=cluster) == 4
