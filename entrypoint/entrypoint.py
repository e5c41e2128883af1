#!/usr/bin/env python3
"""Odoo Cloud Run image - **Python bootstrap entry-point**
======================================================================

This file replaces the historical `startup.sh` shell script of the Cloud Run
image.  It brings a fresh *or* recycled container instance into a servable
state, then `exec`s the Odoo server so that it becomes the foreground process
the platform supervises.

Every stage is idempotent and safe to re-run on each container start:

```
Stage          | Concern                                   | Python helper
---------------+-------------------------------------------+----------------------
WAIT_DB        | Bounded wait with exponential backoff     | wait_for_database
ENSURE_DB      | Create the target database if absent      | ensure_database
SYNC_ADDONS    | Refresh the custom add-ons overlay        | sync_custom_addons
RENDER_CONFIG  | Regenerate odoo.conf from the environment | render_configuration
CHECK_INIT     | Marker table present?                     | needs_initialisation
INIT           | Install base schema once, under a lock    | initialise_if_needed
SERVE          | Replace this process with the server      | serve
```

There are no backward transitions.  Any failure before *SERVE* is fatal for
the boot attempt: the helper logs a single ``FATAL`` line and exits non-zero
so that the platform restarts the container and the whole sequence runs
again.

Concurrency
-----------
Cloud Run may start several instances at the same time.  *ENSURE_DB* treats
a lost ``CREATE DATABASE`` race as success.  *INIT* is double-checked: the
marker table is checked without a lock first, then again while holding an
initialisation lock keyed by database name (PostgreSQL advisory lock by
default, Redis or none through ``BOOTSTRAP_LOCK_BACKEND``).  Operators who
prefer a single designated migration job run ``odoo-bootstrap --init-only``
before scaling and start serving instances with ``--skip-init``, which
only verify that the database exists and is initialised.
"""

from __future__ import annotations

import argparse
import contextlib
import os
import subprocess
import sys
from dataclasses import dataclass
from os import environ
from pathlib import Path
from typing import Any, Generator, Mapping, Sequence, TypedDict

import psycopg2
import redis

from tools.src import addons_sync, database, lock_handler, odoo_config, wait_for_postgres
from tools.src.errors import (
    AddonsSyncError,
    BootstrapError,
    ConfigurationError,
    InitialisationError,
)

__all__ = [
    "ENV_OPTIONS",
    "STAGES",
    "BootstrapEnv",
    "EnvOption",
    "gather_env",
    "validate_env",
    "wait_for_database",
    "ensure_database",
    "database_present",
    "sync_custom_addons",
    "render_configuration",
    "needs_initialisation",
    "initialisation_lock",
    "initialise_database",
    "initialise_if_needed",
    "build_init_command",
    "build_server_command",
    "run_bootstrap",
    "serve",
    "main",
]


STAGES = ("WAIT_DB", "ENSURE_DB", "SYNC_ADDONS", "RENDER_CONFIG", "CHECK_INIT", "INIT", "SERVE")


def _log(message: str) -> None:
    print(f"[entrypoint] {message}", file=sys.stderr)


# ---------------------------------------------------------------------------
#  Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EnvOption:
    """One environment variable understood by the bootstrapper."""

    name: str
    default: str
    required_in_prod: bool = False
    kind: str = "str"  # str | int | float
    choices: tuple[str, ...] = ()


# Single source of truth for every knob: name, default, production
# requirement and validation rule.  Empty values fall back to the default,
# matching the ``${VAR:-default}`` expansion of the historical script.
ENV_OPTIONS: tuple[EnvOption, ...] = (
    EnvOption("ODOO_ENVIRONMENT", "", choices=("", "prod", "staging")),
    # Database
    EnvOption("DB_HOST", "localhost", required_in_prod=True),
    EnvOption("DB_PORT", "5432", kind="int"),
    EnvOption("DB_NAME", "odoo", required_in_prod=True),
    EnvOption("DB_USER", "odoo"),
    EnvOption("DB_PASSWORD", "", required_in_prod=True),
    EnvOption("DB_WAIT_MAX_ATTEMPTS", "10", kind="int"),
    EnvOption("DB_WAIT_INITIAL_DELAY", "1", kind="float"),
    EnvOption("DB_WAIT_MAX_DELAY", "30", kind="float"),
    # Security
    EnvOption("ADMIN_PASSWORD", "admin", required_in_prod=True),
    # Custom add-ons overlay
    EnvOption("CUSTOM_ADDONS_REPO", ""),
    EnvOption("CUSTOM_ADDONS_BRANCH", "main"),
    EnvOption("CUSTOM_ADDONS_DIR", addons_sync.DEFAULT_OVERLAY_DIR),
    EnvOption("CUSTOM_ADDONS_SYNC_POLICY", "fail", choices=("fail", "warn")),
    EnvOption("GITHUB_TOKEN", ""),
    EnvOption("ADDONS_PATH", odoo_config.DEFAULT_ADDONS_PATH),
    # Server tunables
    EnvOption("ODOO_WORKERS", "2", kind="int"),
    EnvOption("ODOO_MAX_CRON_THREADS", "1", kind="int"),
    EnvOption("ODOO_LIMIT_MEMORY_HARD", "2147483648", kind="int"),
    EnvOption("ODOO_LIMIT_MEMORY_SOFT", "1717986918", kind="int"),
    EnvOption("ODOO_LIMIT_TIME_CPU", "600", kind="int"),
    EnvOption("ODOO_LIMIT_TIME_REAL", "1200", kind="int"),
    EnvOption("ODOO_LOG_LEVEL", "info"),
    EnvOption("ODOO_PROXY_MODE", "True", choices=("True", "False")),
    # Binaries & files
    EnvOption("ODOO_BIN", "/opt/odoo/odoo-bin"),
    EnvOption("ODOO_PYTHON", "python3"),
    EnvOption("ODOO_CONFIG_FILE", odoo_config.CONFIG_FILE_PATH),
    # Initialisation lock
    EnvOption("BOOTSTRAP_LOCK_BACKEND", "postgres", choices=("postgres", "redis", "none")),
    EnvOption("BOOTSTRAP_LOCK_TIMEOUT", "1800", kind="int"),
)


class BootstrapEnv(TypedDict):
    """Every variable of :data:`ENV_OPTIONS`, always populated by :func:`gather_env`."""

    ODOO_ENVIRONMENT: str
    DB_HOST: str
    DB_PORT: str
    DB_NAME: str
    DB_USER: str
    DB_PASSWORD: str
    DB_WAIT_MAX_ATTEMPTS: str
    DB_WAIT_INITIAL_DELAY: str
    DB_WAIT_MAX_DELAY: str
    ADMIN_PASSWORD: str
    CUSTOM_ADDONS_REPO: str
    CUSTOM_ADDONS_BRANCH: str
    CUSTOM_ADDONS_DIR: str
    CUSTOM_ADDONS_SYNC_POLICY: str
    GITHUB_TOKEN: str
    ADDONS_PATH: str
    ODOO_WORKERS: str
    ODOO_MAX_CRON_THREADS: str
    ODOO_LIMIT_MEMORY_HARD: str
    ODOO_LIMIT_MEMORY_SOFT: str
    ODOO_LIMIT_TIME_CPU: str
    ODOO_LIMIT_TIME_REAL: str
    ODOO_LOG_LEVEL: str
    ODOO_PROXY_MODE: str
    ODOO_BIN: str
    ODOO_PYTHON: str
    ODOO_CONFIG_FILE: str
    BOOTSTRAP_LOCK_BACKEND: str
    BOOTSTRAP_LOCK_TIMEOUT: str


def gather_env(env: Mapping[str, str] | BootstrapEnv | None = None) -> BootstrapEnv:
    """Return a mapping holding *all* bootstrap variables with defaults.

    Unknown keys are ignored, meaning callers may safely pass ``os.environ``
    directly.  Passing the result of a previous call returns an equal mapping.
    """

    src = environ if env is None else env
    values = {opt.name: str(src.get(opt.name) or opt.default) for opt in ENV_OPTIONS}
    return BootstrapEnv(**values)  # type: ignore[typeddict-item]


def validate_env(env: Mapping[str, str] | None = None) -> BootstrapEnv:
    """Validate the *raw* environment and return the gathered mapping.

    In production (``ODOO_ENVIRONMENT=prod``) every option flagged
    ``required_in_prod`` must be explicitly provided: silently booting the
    production service against ``localhost`` or with the ``admin`` master
    password is never what the operator wanted.  Numeric and enumerated
    options are checked in every environment.

    Raises:
        ConfigurationError: listing **all** problems found.
    """

    src = environ if env is None else env
    gathered = gather_env(src)
    problems: list[str] = []

    production = gathered["ODOO_ENVIRONMENT"] == "prod"

    for opt in ENV_OPTIONS:
        value = gathered[opt.name]  # type: ignore[literal-required]
        if production and opt.required_in_prod and not src.get(opt.name):
            problems.append(f"{opt.name} must be set in production")
        if opt.choices and value not in opt.choices:
            allowed = ", ".join(c or "<empty>" for c in opt.choices)
            problems.append(f"{opt.name}={value!r} is not one of: {allowed}")
        if opt.kind in {"int", "float"}:
            try:
                number = int(value) if opt.kind == "int" else float(value)
            except ValueError:
                problems.append(f"{opt.name}={value!r} is not a valid {opt.kind}")
            else:
                if number < 0:
                    problems.append(f"{opt.name} must not be negative")

    if problems:
        raise ConfigurationError("invalid configuration: " + "; ".join(problems))
    return gathered


# ---------------------------------------------------------------------------
#  Stages
# ---------------------------------------------------------------------------


def _connect(env: BootstrapEnv, dbname: str = database.MAINTENANCE_DB) -> Any:
    return database.connect(
        host=env["DB_HOST"],
        port=int(env["DB_PORT"]),
        user=env["DB_USER"],
        password=env["DB_PASSWORD"],
        dbname=dbname,
    )


def wait_for_database(env: Mapping[str, str] | BootstrapEnv | None = None) -> int:
    """Block until the maintenance database accepts connections.

    Delegates to :func:`tools.src.wait_for_postgres.wait_for_postgres` with the
    retry budget from ``DB_WAIT_*``.  Returns the successful attempt number.

    Raises:
        DependencyTimeoutError: once the budget is exhausted.
    """

    env = gather_env(env)
    _log(f"Waiting for database at {env['DB_HOST']}:{env['DB_PORT']}...")
    return wait_for_postgres.wait_for_postgres(
        user=env["DB_USER"],
        password=env["DB_PASSWORD"],
        host=env["DB_HOST"],
        port=int(env["DB_PORT"]),
        dbname=database.MAINTENANCE_DB,
        max_attempts=int(env["DB_WAIT_MAX_ATTEMPTS"]),
        initial_delay=float(env["DB_WAIT_INITIAL_DELAY"]),
        max_delay=float(env["DB_WAIT_MAX_DELAY"]),
    )


def ensure_database(env: Mapping[str, str] | BootstrapEnv | None = None) -> bool:
    """Create ``DB_NAME`` unless it exists.  Returns *True* when created here."""

    env = gather_env(env)
    _log(f"Checking if database '{env['DB_NAME']}' exists...")
    conn = _connect(env)
    try:
        return database.ensure_database(conn, env["DB_NAME"])
    finally:
        database.close_quietly(conn)


def database_present(env: Mapping[str, str] | BootstrapEnv | None = None) -> bool:
    """Return *True* when ``DB_NAME`` exists.  Never creates it."""

    env = gather_env(env)
    conn = _connect(env)
    try:
        return database.database_exists(conn, env["DB_NAME"])
    finally:
        database.close_quietly(conn)


def sync_custom_addons(env: Mapping[str, str] | BootstrapEnv | None = None) -> list[str]:
    """Refresh the custom add-ons overlay from ``CUSTOM_ADDONS_REPO``.

    An empty repository URL leaves the overlay untouched and performs no
    network I/O.  Fetch failures follow ``CUSTOM_ADDONS_SYNC_POLICY``:

    * ``fail`` - re-raise :class:`AddonsSyncError`; the boot aborts rather than
      serving stale or missing custom code.
    * ``warn`` - log a WARNING and keep whatever overlay is already on disk.
    """

    env = gather_env(env)
    try:
        return addons_sync.sync_addons(
            env["CUSTOM_ADDONS_REPO"],
            env["CUSTOM_ADDONS_BRANCH"],
            env["CUSTOM_ADDONS_DIR"],
            token=env["GITHUB_TOKEN"] or None,
        )
    except AddonsSyncError as exc:
        if env["CUSTOM_ADDONS_SYNC_POLICY"] != "warn":
            raise
        _log(f"WARNING: custom addons sync failed, keeping existing overlay ({exc})")
        return []


def render_configuration(env: Mapping[str, str] | BootstrapEnv | None = None) -> Path:
    """Regenerate ``odoo.conf`` from the environment and return its path."""

    env = gather_env(env)
    _log("Updating Odoo configuration...")
    return Path(odoo_config.render_from_env(env, path=env["ODOO_CONFIG_FILE"]))


def needs_initialisation(env: Mapping[str, str] | BootstrapEnv | None = None) -> bool:
    """Return *True* exactly when the marker table is absent from ``DB_NAME``."""

    env = gather_env(env)
    conn = _connect(env, dbname=env["DB_NAME"])
    try:
        return not database.is_initialised(conn)
    finally:
        database.close_quietly(conn)


@contextlib.contextmanager
def initialisation_lock(env: Mapping[str, str] | BootstrapEnv | None = None) -> Generator[None, None, None]:
    """Hold the cross-instance initialisation lock for ``DB_NAME``."""

    env = gather_env(env)
    backend = env["BOOTSTRAP_LOCK_BACKEND"]
    key = database.lock_key(env["DB_NAME"])
    timeout = int(env["BOOTSTRAP_LOCK_TIMEOUT"])

    if backend == "none":
        yield
        return

    if backend == "redis":
        lock_handler.wait_for_redis()
        lock_handler.acquire_or_wait(key, timeout)
        try:
            yield
        finally:
            lock_handler.release_lock(key)
        return

    conn = _connect(env)
    try:
        with database.advisory_lock(conn, key, timeout):
            yield
    finally:
        database.close_quietly(conn)


def build_init_command(env: Mapping[str, str] | BootstrapEnv | None = None) -> list[str]:
    """Return the one-shot schema installation command (demo data disabled)."""

    env = gather_env(env)
    return [
        env["ODOO_PYTHON"],
        env["ODOO_BIN"],
        "-c",
        env["ODOO_CONFIG_FILE"],
        "-d",
        env["DB_NAME"],
        "--init=base",
        "--stop-after-init",
        "--without-demo=all",
    ]


def build_server_command(env: Mapping[str, str] | BootstrapEnv | None = None) -> list[str]:
    """Return the long-running server command."""

    env = gather_env(env)
    return [env["ODOO_PYTHON"], env["ODOO_BIN"], "-c", env["ODOO_CONFIG_FILE"], "-d", env["DB_NAME"]]


def initialise_database(env: Mapping[str, str] | BootstrapEnv | None = None) -> None:
    """Install the base schema.  Must complete before the server starts.

    Raises:
        InitialisationError: when the Odoo process fails or cannot be started.
    """

    env = gather_env(env)
    cmd = build_init_command(env)
    _log("First-time setup detected, installing base modules...")
    try:
        subprocess.run(cmd, check=True)
    except subprocess.CalledProcessError as exc:
        raise InitialisationError(
            f"schema initialisation of '{env['DB_NAME']}' failed with exit code {exc.returncode}",
            cause=exc,
        ) from exc
    except FileNotFoundError as exc:
        raise InitialisationError(f"cannot run {cmd[0]}: {exc}", cause=exc) from exc
    _log("Database initialized successfully")


def initialise_if_needed(env: Mapping[str, str] | BootstrapEnv | None = None) -> bool:
    """Initialise ``DB_NAME`` exactly once.  Returns *True* when this call did it.

    The cheap unlocked check lets already initialised databases skip the lock
    entirely; the check is repeated under the lock because another instance
    may have finished initialisation while we were waiting.
    """

    env = gather_env(env)
    if not needs_initialisation(env):
        _log(f"Database '{env['DB_NAME']}' already initialised, skipping init")
        return False

    with initialisation_lock(env):
        if not needs_initialisation(env):
            _log(f"Database '{env['DB_NAME']}' was initialised by another instance")
            return False
        initialise_database(env)
    return True


def run_bootstrap(env: Mapping[str, str] | BootstrapEnv | None = None, *, mode: str = "serve") -> list[str]:
    """Run every stage before *SERVE* and return the server command.

    *mode* is ``serve`` (default), ``init-only`` (same stages, caller exits
    instead of serving) or ``skip-init`` (never create or initialise; a missing or
    uninitialised database is a fatal error).
    """

    if mode not in {"serve", "init-only", "skip-init"}:
        raise ValueError(f"unknown mode: {mode}")

    env = gather_env(env)

    _log("stage WAIT_DB")
    wait_for_database(env)

    _log("stage ENSURE_DB")
    if mode == "skip-init":
        if not database_present(env):
            raise InitialisationError(
                f"database '{env['DB_NAME']}' does not exist; run the init-only job first"
            )
    else:
        ensure_database(env)

    _log("stage SYNC_ADDONS")
    sync_custom_addons(env)

    _log("stage RENDER_CONFIG")
    render_configuration(env)

    _log("stage CHECK_INIT")
    if mode == "skip-init":
        if needs_initialisation(env):
            raise InitialisationError(
                f"database '{env['DB_NAME']}' is not initialised; run the init-only job first"
            )
    else:
        _log("stage INIT")
        initialise_if_needed(env)

    return build_server_command(env)


def serve(cmd: Sequence[str]) -> None:  # pragma: no cover - replaces the process
    """Replace the current process with *cmd* so signals reach the server directly."""

    _log("stage SERVE")
    _log(f"Starting Odoo server: {' '.join(cmd)}")
    sys.stdout.flush()
    sys.stderr.flush()
    os.execvp(cmd[0], list(cmd))


def _parse_args(argv: Sequence[str] | None) -> str:
    parser = argparse.ArgumentParser(prog="odoo-bootstrap", description="Bootstrap and start Odoo")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--init-only", action="store_true", help="initialise the database then exit")
    group.add_argument("--skip-init", action="store_true", help="never initialise; fail if required")
    args = parser.parse_args(argv)
    if args.init_only:
        return "init-only"
    if args.skip_init:
        return "skip-init"
    return "serve"


def main(argv: Sequence[str] | None = None) -> None:
    """Container command: run the bootstrap stages then exec the server."""

    mode = _parse_args(sys.argv[1:] if argv is None else argv)
    _log("=== Odoo Cloud Run Startup ===")

    try:
        env = validate_env()
        if env["ODOO_ENVIRONMENT"]:
            _log(f"Environment: {env['ODOO_ENVIRONMENT']}")
        cmd = run_bootstrap(env, mode=mode)
    except BootstrapError as exc:
        _log(f"FATAL [{exc.category}]: {exc}")
        sys.exit(1)
    except (psycopg2.Error, redis.RedisError, OSError) as exc:
        _log(f"FATAL [{type(exc).__name__}]: {str(exc).strip()}")
        sys.exit(1)

    if mode == "init-only":
        _log("Initialisation complete, exiting (init-only)")
        return

    serve(cmd)


if __name__ == "__main__":  # pragma: no cover
    main()
