"""Repository-wide pytest configuration.

Pins the repository root on ``sys.path`` so the ``relayer`` package resolves
without an editable install, and clears ``RELAYER_*`` overrides so a developer's
shell environment cannot change what the suites load.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("PYTHONPATH", str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_relayer_env(monkeypatch):
    """Remove relay environment overrides; tests re-apply what they need."""

    for key in list(os.environ):
        if key.startswith("RELAYER_"):
            monkeypatch.delenv(key, raising=False)
    yield
