"""Repository-wide pytest configuration.

Pins the repository root on ``sys.path`` so ``cabflow`` resolves without an
install, and keeps workflow configuration from leaking between tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_CONFIG_KEYS = ("PRIVATE_KEY",)


@pytest.fixture(autouse=True)
def _clean_cab_environment(monkeypatch):
    """Drop CAB settings inherited from the caller's shell or a ``.env`` file."""

    for key in list(os.environ):
        if key.startswith("CAB_") or key.endswith("_BUNDLER_RPC") or key in _CONFIG_KEYS:
            monkeypatch.delenv(key, raising=False)
    yield
