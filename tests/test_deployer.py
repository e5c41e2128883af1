"""Unit tests for the Cloud Run deployer.

``subprocess.run`` is replaced by a scripted fake CLI that records every
command, so the orchestration can be checked without gcloud or docker.
"""

from __future__ import annotations

import subprocess
from typing import Callable

import pytest
import requests

from deployer.src import main as deployer
from tools.src.errors import CommandError, PreconditionError


class FakeCli:
    """Scripted stand-in for ``subprocess.run``."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.account = "deployer@example.com"
        self.docker_running = True
        self.service_account_exists = True
        self.granted_roles: list[str] = list(deployer.SERVICE_ACCOUNT_ROLES)
        self.failing: Callable[[list[str]], bool] = lambda cmd: False

    def __call__(self, command, check=True, text=True, stdout=None, stderr=None):
        self.commands.append(list(command))
        out = ""
        if self.failing(command):
            raise subprocess.CalledProcessError(1, command, stderr="boom")
        if command[:3] == ["gcloud", "auth", "list"]:
            out = self.account
        elif command[:2] == ["docker", "info"] and not self.docker_running:
            raise subprocess.CalledProcessError(1, command, stderr="Cannot connect to the Docker daemon")
        elif command[:4] == ["gcloud", "iam", "service-accounts", "describe"] and not self.service_account_exists:
            raise subprocess.CalledProcessError(1, command, stderr="NOT_FOUND")
        elif command[:3] == ["gcloud", "projects", "get-iam-policy"]:
            out = "\n".join(self.granted_roles)
        elif command[:4] == ["gcloud", "run", "services", "describe"]:
            out = f"https://{command[4]}-abc.a.run.app\n"
        return subprocess.CompletedProcess(command, 0, out, "")

    def matching(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.commands if c[: len(prefix)] == list(prefix)]


@pytest.fixture()
def cli(monkeypatch) -> FakeCli:
    fake = FakeCli()
    monkeypatch.setattr(deployer.subprocess, "run", fake)
    monkeypatch.setattr(deployer, "DRY_RUN", False)
    monkeypatch.setattr(deployer, "verify_endpoint", lambda url, timeout=30.0: True)
    return fake


@pytest.fixture()
def settings() -> deployer.DeploySettings:
    return deployer.DeploySettings(build_id="20250302120000")


def test_settings_from_env_overrides_defaults():
    settings = deployer.DeploySettings.from_env({"DEPLOY_PROJECT_ID": "acme", "DEPLOY_REGION": ""})

    assert settings.project_id == "acme"
    assert settings.region == "us-central1"
    assert settings.service_account == "odoo-cloud-run@acme.iam.gserviceaccount.com"
    assert settings.cloudsql_connection == "acme:us-central1:summit-paragliding-db"


@pytest.mark.parametrize(
    "selector, expected",
    [("prod", ["prod"]), ("staging", ["staging"]), ("both", ["staging", "prod"])],
)
def test_plan_targets(selector, expected, settings):
    assert [t.environment for t in deployer.plan_targets(selector, settings)] == expected


def test_plan_targets_rejects_unknown(settings):
    with pytest.raises(ValueError):
        deployer.plan_targets("dev", settings)


def test_environment_derivations(settings):
    prod, = deployer.plan_targets("prod", settings)
    staging, = deployer.plan_targets("staging", settings)

    assert (prod.image_tag, prod.addons_branch) == ("latest", "main")
    assert (staging.image_tag, staging.addons_branch) == ("staging", "staging")
    assert prod.db_name == "summit-paragliding-prod"
    assert staging.service_name == "summit-paragliding-odoo-staging"


def test_staging_deployment(cli, settings):
    urls = deployer.deploy("staging", settings)

    assert urls == {"staging": "https://summit-paragliding-odoo-staging-abc.a.run.app"}

    image = "gcr.io/summit-paragliding/summit-paragliding-odoo:staging-20250302120000"
    assert cli.matching("docker", "build") == [["docker", "build", "-t", image, "."]]
    assert cli.matching("docker", "push") == [["docker", "push", image]]

    deploy_cmd, = cli.matching("gcloud", "run", "deploy")
    assert deploy_cmd[3] == "summit-paragliding-odoo-staging"
    assert f"--image={image}" in deploy_cmd
    env_flag = next(f for f in deploy_cmd if f.startswith("--set-env-vars="))
    assert "DB_NAME=summit-paragliding-staging" in env_flag
    assert "CUSTOM_ADDONS_BRANCH=staging" in env_flag
    assert "ODOO_ENVIRONMENT=staging" in env_flag
    assert "DB_HOST=/cloudsql/summit-paragliding:us-central1:summit-paragliding-db" in env_flag
    secrets_flag = next(f for f in deploy_cmd if f.startswith("--set-secrets="))
    assert "DB_PASSWORD=odoo-db-password:latest" in secrets_flag
    assert "ADMIN_PASSWORD=odoo-admin-password:latest" in secrets_flag
    for flag in ("--memory=2Gi", "--cpu=2", "--timeout=3600", "--concurrency=1000",
                 "--min-instances=1", "--max-instances=10", "--execution-environment=gen2"):
        assert flag in deploy_cmd
    assert not cli.matching("gcloud", "beta", "run", "domain-mappings")


def test_both_deploys_staging_before_prod(cli, settings):
    deployer.deploy("both", settings)

    services = [c[3] for c in cli.matching("gcloud", "run", "deploy")]
    assert services == ["summit-paragliding-odoo-staging", "summit-paragliding-odoo-prod"]
    tags = [c[3].rsplit(":", 1)[1] for c in cli.matching("docker", "build")]
    assert tags == ["staging-20250302120000", "latest-20250302120000"]


def test_missing_authentication_aborts_before_mutation(cli, settings):
    cli.account = ""

    with pytest.raises(PreconditionError, match="gcloud auth login"):
        deployer.deploy("prod", settings)

    assert cli.matching("docker", "build") == []
    assert cli.matching("gcloud", "run", "deploy") == []


def test_docker_not_running_aborts(cli, settings):
    cli.docker_running = False

    with pytest.raises(PreconditionError, match="Docker is not running"):
        deployer.check_prerequisites()


def test_service_account_is_idempotent(cli, settings):
    assert deployer.ensure_service_account(settings) == []
    assert cli.matching("gcloud", "iam", "service-accounts", "create") == []
    assert cli.matching("gcloud", "projects", "add-iam-policy-binding") == []


def test_service_account_created_and_roles_granted(cli, settings):
    cli.service_account_exists = False
    cli.granted_roles = ["roles/cloudsql.client"]

    granted = deployer.ensure_service_account(settings)

    assert granted == ["roles/secretmanager.secretAccessor"]
    assert len(cli.matching("gcloud", "iam", "service-accounts", "create")) == 1


def test_failed_build_stops_deployment(cli, settings):
    cli.failing = lambda cmd: cmd[:2] == ["docker", "build"]

    with pytest.raises(CommandError) as excinfo:
        deployer.deploy("both", settings)

    assert excinfo.value.returncode == 1
    assert cli.matching("gcloud", "run", "deploy") == []


def test_custom_domain_mapping(cli, settings):
    deployer.deploy("prod", settings, domains={"prod": "odoo.example.com", "staging": "ignored.example.com"})

    mapping, = cli.matching("gcloud", "beta", "run", "domain-mappings", "create")
    assert "--service=summit-paragliding-odoo-prod" in mapping
    assert "--domain=odoo.example.com" in mapping


def test_dry_run_only_performs_read_only_calls(cli, settings, monkeypatch, capsys):
    monkeypatch.setattr(deployer, "DRY_RUN", True)

    deployer.deploy("both", settings)

    mutating = (
        cli.matching("docker", "build")
        + cli.matching("docker", "push")
        + cli.matching("gcloud", "run", "deploy")
        + cli.matching("gcloud", "auth", "configure-docker")
    )
    assert mutating == []
    assert "+ gcloud run deploy summit-paragliding-odoo-staging" in capsys.readouterr().out


def test_image_url_defaults_to_timestamp(settings):
    target, = deployer.plan_targets("prod", settings)
    url = deployer.image_url(target, deployer.DeploySettings())
    tag = url.rsplit(":", 1)[1]
    assert tag.startswith("latest-")
    assert len(tag.split("-", 1)[1]) == 14


def test_verify_endpoint_only_warns(monkeypatch):
    def _get(url, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(deployer.requests, "get", _get)
    assert deployer.verify_endpoint("https://svc.a.run.app") is False


def test_main_exits_non_zero_on_failure(cli, monkeypatch):
    cli.account = ""
    monkeypatch.setattr(deployer.signal, "signal", lambda *a: None)

    with pytest.raises(SystemExit) as excinfo:
        deployer.main(["prod"])

    assert excinfo.value.code == 1


def test_main_defaults_to_both(cli, monkeypatch):
    monkeypatch.setattr(deployer.signal, "signal", lambda *a: None)
    monkeypatch.setenv("DEPLOY_BUILD_ID", "1")

    deployer.main([])

    assert len(cli.matching("gcloud", "run", "deploy")) == 2
