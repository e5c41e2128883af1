"""Unit tests for *gather_env* and *validate_env*.

Both helpers are pure: they take a mapping and return a new one, so no
monkeypatching of ``os.environ`` is required.
"""

from __future__ import annotations

import pytest

import entrypoint.entrypoint as ep
from tools.src.errors import ConfigurationError


PROD_ENV = {
    "ODOO_ENVIRONMENT": "prod",
    "DB_HOST": "/cloudsql/p:r:i",
    "DB_NAME": "summit-paragliding-prod",
    "DB_PASSWORD": "pw",
    "ADMIN_PASSWORD": "master",
}


def test_gather_env_applies_defaults():
    env = ep.gather_env({})

    assert set(env) == {opt.name for opt in ep.ENV_OPTIONS}
    assert env["DB_HOST"] == "localhost"
    assert env["DB_PORT"] == "5432"
    assert env["CUSTOM_ADDONS_BRANCH"] == "main"
    assert env["CUSTOM_ADDONS_SYNC_POLICY"] == "fail"
    assert env["BOOTSTRAP_LOCK_BACKEND"] == "postgres"


def test_gather_env_empty_values_fall_back():
    env = ep.gather_env({"DB_HOST": "", "ADDONS_PATH": ""})
    assert env["DB_HOST"] == "localhost"
    assert env["ADDONS_PATH"] == "/opt/odoo/addons,/mnt/extra-addons"


def test_gather_env_is_idempotent_and_ignores_unknown_keys():
    first = ep.gather_env({"DB_NAME": "x", "UNRELATED": "1"})
    assert "UNRELATED" not in first
    assert ep.gather_env(first) == first


def test_validate_env_accepts_defaults_outside_production():
    assert ep.validate_env({})["DB_NAME"] == "odoo"


def test_validate_env_accepts_complete_production_env():
    assert ep.validate_env(PROD_ENV)["ODOO_ENVIRONMENT"] == "prod"


def test_validate_env_requires_explicit_values_in_production():
    with pytest.raises(ConfigurationError) as excinfo:
        ep.validate_env({"ODOO_ENVIRONMENT": "prod"})

    message = str(excinfo.value)
    for name in ("DB_HOST", "DB_NAME", "DB_PASSWORD", "ADMIN_PASSWORD"):
        assert f"{name} must be set in production" in message


@pytest.mark.parametrize(
    "override, fragment",
    [
        ({"DB_PORT": "abc"}, "DB_PORT='abc' is not a valid int"),
        ({"DB_WAIT_MAX_DELAY": "-1"}, "DB_WAIT_MAX_DELAY must not be negative"),
        ({"CUSTOM_ADDONS_SYNC_POLICY": "ignore"}, "CUSTOM_ADDONS_SYNC_POLICY='ignore'"),
        ({"BOOTSTRAP_LOCK_BACKEND": "etcd"}, "BOOTSTRAP_LOCK_BACKEND='etcd'"),
        ({"ODOO_ENVIRONMENT": "dev"}, "ODOO_ENVIRONMENT='dev'"),
    ],
)
def test_validate_env_rejects_bad_values(override, fragment):
    with pytest.raises(ConfigurationError) as excinfo:
        ep.validate_env(override)
    assert fragment in str(excinfo.value)
    assert excinfo.value.category == "precondition"


def test_commands_are_built_from_env():
    env = ep.gather_env({"DB_NAME": "staging", "ODOO_CONFIG_FILE": "/tmp/o.conf"})

    assert ep.build_server_command(env) == [
        "python3", "/opt/odoo/odoo-bin", "-c", "/tmp/o.conf", "-d", "staging",
    ]
    init = ep.build_init_command(env)
    assert init[:6] == ["python3", "/opt/odoo/odoo-bin", "-c", "/tmp/o.conf", "-d", "staging"]
    assert "--init=base" in init
    assert "--stop-after-init" in init
    assert "--without-demo=all" in init
