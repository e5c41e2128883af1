#!/usr/bin/env python3
"""
database.py - PostgreSQL helpers used during container bootstrap.

All statements are parameterised; database names are quoted as identifiers
through :mod:`psycopg2.sql` so that values coming from the environment are
never interpolated into SQL text.

History:
    2025-03-02: Initial creation
"""

import contextlib
import sys
import time
from typing import Any, Generator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql

from tools.src.errors import LockTimeoutError

MAINTENANCE_DB: str = "postgres"
MARKER_TABLE: str = "ir_module_module"
DEFAULT_LOCK_POLL_SECONDS: float = 5.0


def connect(
    host: str,
    port: int,
    user: str,
    password: str,
    dbname: str = MAINTENANCE_DB,
    autocommit: bool = True,
) -> Any:
    """Open a psycopg2 connection.

    Args:
        host: Database host or unix socket directory.
        port: Database port.
        user: Database user.
        password: Database password.
        dbname: Database to connect to. Defaults to the maintenance database.
        autocommit: Whether to enable autocommit, required by ``CREATE DATABASE``.

    Returns:
        The open connection.
    """
    conn = psycopg2.connect(host=host, port=port, user=user, password=password, dbname=dbname)
    conn.autocommit = autocommit
    return conn


def database_exists(conn: Any, name: str) -> bool:
    """Return True when database *name* exists on the server."""
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (name,))
        return cur.fetchone() is not None


def create_database(conn: Any, name: str) -> bool:
    """Create database *name*.

    Returns:
        bool: True when this call created the database, False when another
        instance created it first.
    """
    statement = sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name))
    try:
        with conn.cursor() as cur:
            cur.execute(statement)
    except pg_errors.DuplicateDatabase:
        print(f"Database '{name}' was created concurrently by another instance.", file=sys.stderr)
        return False
    except pg_errors.UniqueViolation:
        # A race lost after the server's own name check surfaces as a
        # pg_database_datname_index violation instead.
        if not database_exists(conn, name):
            raise
        print(f"Database '{name}' was created concurrently by another instance.", file=sys.stderr)
        return False
    return True


def ensure_database(conn: Any, name: str) -> bool:
    """Create database *name* unless it already exists.

    Returns:
        bool: True if the database was created by this call.
    """
    if database_exists(conn, name):
        print(f"Database '{name}' already exists", file=sys.stderr)
        return False
    print(f"Database '{name}' does not exist, creating it...", file=sys.stderr)
    created = create_database(conn, name)
    if created:
        print(f"Database '{name}' created successfully", file=sys.stderr)
    return created


def table_exists(conn: Any, table: str, schema: str = "public") -> bool:
    """Return True when *table* exists in *schema* of the connected database."""
    with conn.cursor() as cur:
        cur.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = %s AND table_name = %s",
            (schema, table),
        )
        return cur.fetchone() is not None


def is_initialised(conn: Any) -> bool:
    """Return True when the Odoo marker table is present."""
    return table_exists(conn, MARKER_TABLE)


def lock_key(dbname: str) -> str:
    """Return the advisory lock key guarding initialisation of *dbname*."""
    return f"odoo-init:{dbname}"


@contextlib.contextmanager
def advisory_lock(
    conn: Any,
    key: str,
    timeout: float,
    poll_seconds: float = DEFAULT_LOCK_POLL_SECONDS,
) -> Generator[None, None, None]:
    """Hold a session-level PostgreSQL advisory lock for *key*.

    The lock is polled with ``pg_try_advisory_lock`` so that the wait is
    bounded by *timeout* seconds.  It is released when the block exits, and
    implicitly by the server should the connection drop.

    Raises:
        LockTimeoutError: If the lock is still held elsewhere after *timeout*.
    """
    deadline = time.monotonic() + timeout
    attempt = 0
    while True:
        attempt += 1
        with conn.cursor() as cur:
            cur.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (key,))
            row = cur.fetchone()
        if row and row[0]:
            break
        if time.monotonic() >= deadline:
            raise LockTimeoutError(f"Lock {key} still held after {timeout:g}s, timeout occurred")
        print(f"Attempt {attempt}: lock {key} held by another instance, waiting...", file=sys.stderr)
        time.sleep(poll_seconds)

    print(f"Lock {key} acquired", file=sys.stderr)
    try:
        yield
    finally:
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
            print(f"Lock {key} released", file=sys.stderr)
        except psycopg2.Error as e:
            # Session locks die with the connection anyway.
            print(f"Error releasing lock {key}: {e}", file=sys.stderr)


def close_quietly(conn: Optional[Any]) -> None:
    """Close *conn* ignoring errors from an already broken connection."""
    if conn is None:
        return
    try:
        conn.close()
    except psycopg2.Error:
        pass
