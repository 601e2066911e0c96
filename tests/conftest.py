"""Shared fixtures for all tests."""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure repo root is on sys.path so tests can import the `speechgate` package
# when running pytest from the repository root without an editable install.
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402

from speechgate._types import ServiceConfig  # noqa: E402
from speechgate.config.settings import get_settings  # noqa: E402
from tests.helpers import FakeClock, FakeTransport, make_service  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def service() -> ServiceConfig:
    return make_service()
