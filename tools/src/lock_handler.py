#!/usr/bin/env python3

"""
lock_handler.py - Redis-based initialisation lock with TLS support.

Alternative to the PostgreSQL advisory lock for deployments that already run
a Redis instance.  Locks are stored as ``SET <name> <token> NX EX`` so that
only the owner that set them can release them.

History:
    2025-03-02: Lazy client creation, owner tokens, bounded waits raising
                LockTimeoutError instead of exiting the process
"""

import os
import signal
import ssl
import sys
import time
import uuid
from types import FrameType
from typing import Optional

import redis

from tools.src.errors import DependencyTimeoutError, LockTimeoutError

# Default constants
DEFAULT_REDIS_HOST: str = 'localhost'
DEFAULT_REDIS_PORT: int = 6379
LOCK_EXPIRE_TIME: int = 3600  # Lock expiration time in seconds

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_client: Optional[redis.Redis] = None
_tokens: dict = {}


def create_redis_client() -> redis.Redis:
    """Create a Redis client with SSL/TLS support if enabled.

    Reads configuration from environment variables.

    Returns:
        redis.Redis: A Redis client instance.
    """
    redis_host: str = os.getenv("REDIS_HOST", DEFAULT_REDIS_HOST)
    redis_port: int = int(os.getenv("REDIS_PORT", str(DEFAULT_REDIS_PORT)))
    redis_password: Optional[str] = os.getenv("REDIS_PASSWORD") or None

    redis_ssl: bool = os.getenv("REDIS_SSL", "false").lower() == "true"
    ssl_cert_reqs_map = {
        'none': ssl.CERT_NONE,
        'optional': ssl.CERT_OPTIONAL,
        'required': ssl.CERT_REQUIRED
    }
    ssl_cert_reqs = ssl_cert_reqs_map.get(
        os.getenv("REDIS_SSL_CERT_REQS", "required").lower(), ssl.CERT_REQUIRED
    )

    return redis.Redis(
        host=redis_host,
        port=redis_port,
        password=redis_password,
        ssl=redis_ssl,
        ssl_ca_certs=os.getenv("REDIS_SSL_CA_CERTS"),
        ssl_cert_reqs=ssl_cert_reqs,
    )


def get_client() -> redis.Redis:
    """Return the process-wide Redis client, creating it on first use."""
    global _client
    if _client is None:
        _client = create_redis_client()
    return _client


def wait_for_redis(max_attempts: int = 12, sleep_seconds: int = 5) -> None:
    """Wait for Redis to answer PING.

    Args:
        max_attempts: Maximum number of attempts.
        sleep_seconds: Seconds to sleep between attempts.

    Raises:
        DependencyTimeoutError: If Redis is not available after max_attempts.
    """
    client = get_client()
    for attempt in range(1, max_attempts + 1):
        try:
            if client.ping():
                print("Redis is ready", file=sys.stderr)
                return
        except (redis.ConnectionError, redis.TimeoutError) as e:
            print(f"Error pinging Redis: {e}", file=sys.stderr)
        if attempt < max_attempts:
            print(f"Attempt {attempt} of {max_attempts}: Redis is not up, waiting...", file=sys.stderr)
            time.sleep(sleep_seconds)
    raise DependencyTimeoutError(f"Redis is not up after {max_attempts} attempts, aborting")


def acquire_lock(name: str, expire_time: int = LOCK_EXPIRE_TIME) -> bool:
    """Attempt to acquire the lock with the given name.

    Args:
        name: The name of the lock.
        expire_time: The expiration time of the lock in seconds.

    Returns:
        bool: True if the lock was acquired, False otherwise.
    """
    token = uuid.uuid4().hex
    result: Optional[bool] = get_client().set(name, token, nx=True, ex=expire_time)
    if result is True:
        _tokens[name] = token
        return True
    return False


def release_lock(name: str) -> bool:
    """Release the lock with the given name if this process owns it.

    Args:
        name: The name of the lock to release.

    Returns:
        bool: True if the lock was deleted.
    """
    token = _tokens.pop(name, None)
    if token is None:
        print(f"Lock {name} is not held by this process", file=sys.stderr)
        return False
    deleted = get_client().eval(_RELEASE_SCRIPT, 1, name, token)
    if deleted:
        print(f"Lock {name} released", file=sys.stderr)
        return True
    print(f"Lock {name} expired or was taken over before release", file=sys.stderr)
    return False


def wait_for_lock(name: str, max_attempts: int = 360, sleep_seconds: int = 5) -> None:
    """Wait until the lock with the given name no longer exists.

    Args:
        name: The name of the lock.
        max_attempts: Maximum number of attempts to check the lock.
        sleep_seconds: Seconds to sleep between attempts.

    Raises:
        LockTimeoutError: If the lock still exists after max_attempts.
    """
    client = get_client()
    for attempt in range(1, max_attempts + 1):
        if not client.exists(name):
            print(f"Lock {name} has been released", file=sys.stderr)
            return
        print(f"Attempt {attempt} of {max_attempts}: Lock {name} still exists, waiting...", file=sys.stderr)
        time.sleep(sleep_seconds)
    raise LockTimeoutError(f"Lock {name} still exists after {max_attempts} attempts, timeout occurred")


def acquire_or_wait(name: str, timeout: int, sleep_seconds: int = 5) -> None:
    """Block until *name* is acquired by this process.

    Waiters poll until the current holder releases, then race again for the
    lock.  The overall wait is bounded by *timeout* seconds.

    Raises:
        LockTimeoutError: If the lock could not be acquired in time.
    """
    deadline = time.monotonic() + timeout
    while not acquire_lock(name, expire_time=max(timeout, LOCK_EXPIRE_TIME)):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise LockTimeoutError(f"Lock {name} could not be acquired within {timeout}s")
        attempts = max(int(remaining // max(sleep_seconds, 1)), 1)
        wait_for_lock(name, max_attempts=attempts, sleep_seconds=sleep_seconds)
    print(f"Lock {name} acquired successfully", file=sys.stderr)


def handle_signal(signum: int, frame: Optional[FrameType]) -> None:
    """Handle system signals for proper cleanup.

    Args:
        signum: The signal number.
        frame: The current stack frame.
    """
    print(f"Received signal {signum}, cleaning up...", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    """Handle Redis lock operations based on command-line arguments."""
    command: str = sys.argv[1] if len(sys.argv) > 1 else "wait"
    lock_name: Optional[str] = sys.argv[2] if len(sys.argv) > 2 else None

    try:
        if command == "wait" and lock_name:
            wait_for_lock(lock_name)
        elif command == "wait":
            wait_for_redis()
        elif command == "status" and lock_name:
            held = bool(get_client().exists(lock_name))
            print(f"Lock {lock_name} is {'held' if held else 'free'}", file=sys.stderr)
            sys.exit(0 if not held else 3)
        else:
            print(f"Unknown command or missing lock name: {command} {lock_name}", file=sys.stderr)
            sys.exit(1)
    except (DependencyTimeoutError, redis.RedisError) as e:
        print(f"An error occurred: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    # Set up signal handlers
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    main()
