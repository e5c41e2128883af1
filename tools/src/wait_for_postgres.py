#!/usr/bin/env python3
"""
wait_for_postgres.py - Wait for PostgreSQL to become available.

The database may be a TCP host or a Cloud SQL unix socket directory such as
``/cloudsql/<project>:<region>:<instance>``; psycopg2 handles both through the
``host`` keyword.  Attempts are bounded and spaced with exponential backoff.

History:
    2025-03-02: Reworked from the fixed-interval waiter: bounded exponential
                backoff, keyword connection parameters, typed timeout error
"""

import os
import signal
import sys
import time
from types import FrameType
from typing import Optional

import psycopg2
from psycopg2 import OperationalError

from tools.src.database import MAINTENANCE_DB
from tools.src.errors import DependencyTimeoutError

# Default constants for script
DEFAULT_MAX_ATTEMPTS: int = 10
DEFAULT_INITIAL_DELAY: float = 1.0
DEFAULT_MAX_DELAY: float = 30.0


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Return the delay to sleep after failed *attempt* (1-based).

    Args:
        attempt (int): Number of the attempt that just failed.
        initial_delay (float): Delay after the first failure.
        max_delay (float): Upper bound for any single delay.

    Returns:
        float: ``initial_delay * 2 ** (attempt - 1)`` capped at ``max_delay``.
    """
    if attempt < 1:
        attempt = 1
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


def wait_for_postgres(
    user: str,
    password: str,
    host: str,
    port: int,
    dbname: str = MAINTENANCE_DB,
    max_attempts: Optional[int] = None,
    initial_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> int:
    """Wait for PostgreSQL to accept connections.

    Args:
        user (str): The database user.
        password (str): The database password.
        host (str): The database host or unix socket directory.
        port (int): The database port.
        dbname (str): Database to connect to. Defaults to the maintenance database.
        max_attempts (Optional[int]): Maximum number of attempts. Defaults to DEFAULT_MAX_ATTEMPTS.
        initial_delay (Optional[float]): First backoff delay. Defaults to DEFAULT_INITIAL_DELAY.
        max_delay (Optional[float]): Backoff cap. Defaults to DEFAULT_MAX_DELAY.

    Returns:
        int: The attempt number that succeeded.

    Raises:
        DependencyTimeoutError: If PostgreSQL is not available after the maximum attempts.
    """
    if max_attempts is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    if initial_delay is None:
        initial_delay = DEFAULT_INITIAL_DELAY
    if max_delay is None:
        max_delay = DEFAULT_MAX_DELAY
    max_attempts = max(max_attempts, 1)

    last_error: Optional[OperationalError] = None
    for attempt in range(1, max_attempts + 1):
        try:
            conn = psycopg2.connect(
                host=host, port=port, user=user, password=password, dbname=dbname
            )
        except OperationalError as e:
            last_error = e
            if attempt >= max_attempts:
                break
            delay = backoff_delay(attempt, initial_delay, max_delay)
            print(
                f"Attempt {attempt} of {max_attempts}: PostgreSQL is not up yet, "
                f"retrying in {delay:g}s... Error: {str(e).strip()}",
                file=sys.stderr,
            )
            time.sleep(delay)
        else:
            conn.close()
            print(f"PostgreSQL is ready on {host}:{port}.", file=sys.stderr)
            return attempt

    raise DependencyTimeoutError(
        f"PostgreSQL is not up after {max_attempts} attempts, aborting. "
        f"Last error: {str(last_error).strip() if last_error else 'unknown'}",
        cause=last_error,
    )


def clean_up(exit_code: int = 0) -> None:
    """Clean up resources and exit with the given exit code.

    Args:
        exit_code (int): The exit code. Defaults to 0.
    """
    print(f"Exiting with code {exit_code}", file=sys.stderr)
    sys.exit(exit_code)


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle system signals for proper cleanup.

    Args:
        signum (int): The signal number.
        frame (Optional[FrameType]): The current stack frame.
    """
    print(f"Received signal {signum}, initiating cleanup.", file=sys.stderr)
    clean_up(1)


def main() -> None:
    """Wait for the database configured through the bootstrap environment variables."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    db_host: str = os.getenv("DB_HOST", "localhost")
    db_user: str = os.getenv("DB_USER", "odoo")
    db_password: str = os.getenv("DB_PASSWORD", "")

    try:
        db_port: int = int(os.getenv("DB_PORT", "5432"))
        max_attempts: int = int(os.getenv("DB_WAIT_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
        initial_delay: float = float(os.getenv("DB_WAIT_INITIAL_DELAY", str(DEFAULT_INITIAL_DELAY)))
        max_delay: float = float(os.getenv("DB_WAIT_MAX_DELAY", str(DEFAULT_MAX_DELAY)))
    except ValueError as e:
        print(f"Invalid numeric setting: {e}", file=sys.stderr)
        clean_up(1)
        return

    print(
        f"Waiting for PostgreSQL to become available for user '{db_user}' at host '{db_host}:{db_port}'...",
        file=sys.stderr,
    )
    try:
        wait_for_postgres(
            user=db_user,
            password=db_password,
            host=db_host,
            port=db_port,
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            max_delay=max_delay,
        )
    except DependencyTimeoutError as e:
        print(str(e), file=sys.stderr)
        clean_up(1)


if __name__ == "__main__":
    main()
