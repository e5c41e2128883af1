"""Pytest configuration – make the *entrypoint*, *tools* and *deployer* packages importable.

The project is not required to be installed for the unit tests to run.  The
repository root is therefore put on ``sys.path`` once per session; set
``PYTEST_PROJECT_ROOT`` when invoking pytest from another directory.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def pytest_configure() -> None:  # noqa: D401 – Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parent.parent)).resolve()
    if str(root) not in sys.path:  # pragma: no cover – executed once
        sys.path.insert(0, str(root))
