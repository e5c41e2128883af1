#!/usr/bin/env python3
"""
errors.py - Typed failures shared by the bootstrapper, the tools and the deployer.

Every error carries a *category* so that the CLI wrappers can report the
class of failure (precondition, transient, permanent, fatal) in a single
log line before exiting non-zero.

History:
    2025-03-02: Initial creation
"""

from typing import Optional


class BootstrapError(RuntimeError):
    """Base class for every failure raised by this code-base."""

    category: str = "fatal"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class PreconditionError(BootstrapError):
    """A prerequisite is missing; nothing has been mutated yet."""

    category = "precondition"


class ConfigurationError(PreconditionError):
    """The environment does not describe a valid configuration."""


class DependencyTimeoutError(BootstrapError):
    """An external dependency stayed unreachable for the whole retry budget."""

    category = "transient"


class LockTimeoutError(DependencyTimeoutError):
    """The initialisation lock could not be acquired in time."""


class AddonsSyncError(BootstrapError):
    """Fetching the custom add-ons overlay failed or produced no content."""

    category = "permanent"


class InitialisationError(BootstrapError):
    """Schema installation failed; the server must not start."""

    category = "fatal"


class CommandError(BootstrapError):
    """An external command (gcloud, docker, git) exited non-zero."""

    category = "command"

    def __init__(self, command: list, returncode: int, stderr: str = "") -> None:
        super().__init__(
            f"command failed ({returncode}): {' '.join(command)}"
            + (f": {stderr.strip()}" if stderr and stderr.strip() else "")
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
