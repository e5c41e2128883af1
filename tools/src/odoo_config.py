#!/usr/bin/env python3
"""Render and inspect the ``odoo.conf`` configuration file.

The file is fully regenerated from a fixed template on every container
start, so identical environment variables always produce byte-identical
output.  Writes are atomic (temporary file + ``os.replace``) and serialised
through a sibling lock file; the temporary file is restricted to ``0640``
before any credential-bearing content reaches the disk.
"""

from __future__ import annotations

import argparse
import fcntl
import os
import signal
import sys
import tempfile
from types import FrameType
from typing import Dict, List, Mapping, Optional, Tuple


CONFIG_FILE_PATH: str = "/etc/odoo/odoo.conf"
CONFIG_FILE_MODE: int = 0o640

DEFAULT_ADDONS_PATH: str = "/opt/odoo/addons,/mnt/extra-addons"

# Ordered (comment, [keys]) groups making up the [options] section.
LAYOUT: List[Tuple[str, List[str]]] = [
    ("Database configuration", ["db_host", "db_port", "db_user", "db_password"]),
    ("Path configuration", ["addons_path", "data_dir", "logfile"]),
    ("Server configuration", ["http_port", "workers", "max_cron_threads"]),
    ("Security", ["list_db", "admin_passwd"]),
    ("Performance (optimized for Cloud Run)", [
        "limit_memory_hard",
        "limit_memory_soft",
        "limit_request",
        "limit_time_cpu",
        "limit_time_real",
    ]),
    ("Logging", ["log_level", "log_handler"]),
    ("Proxy mode (required for Cloud Run)", ["proxy_mode"]),
    ("Without demo data", ["without_demo"]),
]

KEYS: List[str] = [key for _, keys in LAYOUT for key in keys]

DEFAULTS: Dict[str, str] = {
    "db_host": "localhost",
    "db_port": "5432",
    "db_user": "odoo",
    "db_password": "",
    "addons_path": DEFAULT_ADDONS_PATH,
    "data_dir": "/var/lib/odoo",
    "logfile": "/var/log/odoo/odoo.log",
    "http_port": "8080",
    "workers": "2",
    "max_cron_threads": "1",
    "list_db": "False",
    "admin_passwd": "admin",
    "limit_memory_hard": "2147483648",
    "limit_memory_soft": "1717986918",
    "limit_request": "8192",
    "limit_time_cpu": "600",
    "limit_time_real": "1200",
    "log_level": "info",
    "log_handler": ":INFO",
    "proxy_mode": "True",
    "without_demo": "True",
}

# Environment variable feeding each configurable key.
ENV_KEYS: Dict[str, str] = {
    "db_host": "DB_HOST",
    "db_port": "DB_PORT",
    "db_user": "DB_USER",
    "db_password": "DB_PASSWORD",
    "addons_path": "ADDONS_PATH",
    "workers": "ODOO_WORKERS",
    "max_cron_threads": "ODOO_MAX_CRON_THREADS",
    "admin_passwd": "ADMIN_PASSWORD",
    "limit_memory_hard": "ODOO_LIMIT_MEMORY_HARD",
    "limit_memory_soft": "ODOO_LIMIT_MEMORY_SOFT",
    "limit_time_cpu": "ODOO_LIMIT_TIME_CPU",
    "limit_time_real": "ODOO_LIMIT_TIME_REAL",
    "log_level": "ODOO_LOG_LEVEL",
    "proxy_mode": "ODOO_PROXY_MODE",
}


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def _log(message: str) -> None:
    """Print *message* to stderr."""

    print(message, file=sys.stderr)


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle termination signals."""

    _log(f"Received signal {signum}, terminating gracefully.")
    sys.exit(1)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def values_from_env(env: Mapping[str, str]) -> Dict[str, str]:
    """Return the full option mapping for *env*.

    Unset **and** empty variables fall back to :data:`DEFAULTS`, except for
    the database password which may legitimately be empty.
    """

    values = dict(DEFAULTS)
    for key, var in ENV_KEYS.items():
        raw = env.get(var)
        if raw is None:
            continue
        if raw == "" and key != "db_password":
            continue
        values[key] = str(raw)
    return values


def render_config(values: Mapping[str, str]) -> str:
    """Render the configuration file text for *values*.

    Keys missing from *values* take their default.  Line breaks inside a
    value would corrupt the INI structure and are rejected.
    """

    lines: List[str] = ["[options]\n"]
    for comment, keys in LAYOUT:
        lines.append(f"; {comment}\n")
        for key in keys:
            value = str(values.get(key, DEFAULTS[key]))
            if "\n" in value or "\r" in value:
                raise ValueError(f"value for {key} must not contain line breaks")
            lines.append(f"{key} = {value}\n")
    return "".join(lines)


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def write_config(content: str, path: Optional[str] = None) -> str:
    """Atomically replace the configuration file at *path* with *content*.

    Returns:
        The path that was written.
    """

    path = path or CONFIG_FILE_PATH
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".odoo.conf.")
    try:
        # Permissions first: the content carries database and master passwords.
        os.fchmod(fd, CONFIG_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        with open(path + ".lock", "a", encoding="utf-8") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                os.replace(tmp_path, path)
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
    finally:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
    return path


def render_from_env(env: Optional[Mapping[str, str]] = None, path: Optional[str] = None) -> str:
    """Render the configuration for *env* (defaults to ``os.environ``) and write it."""

    content = render_config(values_from_env(os.environ if env is None else env))
    written = write_config(content, path)
    _log(f"Config file '{written}' rendered ({len(content.encode('utf-8'))} bytes).")
    return written


def read_config_lines(path: Optional[str] = None) -> List[str]:
    """Return the configuration file as a list of lines."""

    with open(path or CONFIG_FILE_PATH, "r", encoding="utf-8") as cfg:
        return cfg.readlines()


def get_config(section: str, key: str, path: Optional[str] = None) -> Optional[str]:
    """Return the value of ``key`` from ``section`` or None when absent."""

    in_section = False
    for line in read_config_lines(path):
        stripped = line.strip()
        if stripped.startswith("["):
            in_section = stripped.strip("[]").lower() == section.lower()
        elif in_section and "=" in line and not stripped.startswith((";", "#")):
            k, v = line.split("=", 1)
            if k.strip() == key:
                return v.strip()
    return None


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""

    parser = argparse.ArgumentParser(description="Render and inspect the odoo.conf file")
    parser.add_argument("--config", default=None, help="Configuration file path")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("render", help="Render the file from environment variables")

    get_parser = subparsers.add_parser("get", help="Get a configuration value")
    get_parser.add_argument("section", type=str)
    get_parser.add_argument("key", type=str)

    subparsers.add_parser("show", help="Print the file with secrets masked")

    return parser.parse_args(argv)


def show_config_file(path: Optional[str] = None) -> None:
    """Print the current configuration file with password values masked."""

    for line in read_config_lines(path):
        key = line.split("=", 1)[0].strip()
        if "=" in line and key in {"db_password", "admin_passwd"}:
            line = f"{key} = ********\n"
        sys.stdout.write(line)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the command line tool."""

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = parse_args(argv)
    path = args.config or os.getenv("ODOO_CONFIG_FILE") or CONFIG_FILE_PATH

    try:
        if args.command == "render":
            render_from_env(path=path)
        elif args.command == "get":
            value = get_config(args.section, args.key, path)
            if value is None:
                _log(f"Error: Key '{args.key}' not found in section '{args.section}'")
                sys.exit(1)
            print(value)
        else:
            show_config_file(path)
    except (OSError, ValueError) as exc:
        _log(f"Error accessing config file: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
