"""Shared fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from readiness_profiler_k8s_api import Clients


@pytest.fixture
def clients() -> Clients:
    """Clients bundle with every API mocked."""
    return Clients(core=MagicMock(), apps=MagicMock(), custom=MagicMock())
