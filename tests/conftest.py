"""Pytest configuration shared by every rtconn test."""

import os

import pytest
from hypothesis import settings

# Async properties drive an event loop per example, so wall-clock deadlines are noise.
settings.register_profile("no_deadline", deadline=None)
settings.load_profile("no_deadline")

INTEGRATION_ENV = "RTCONN_INTEGRATION"
"""Set to 1 to run tests that open real aiortc sessions on this host."""


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: opens real peer sessions; needs RTCONN_INTEGRATION=1"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests unless explicitly enabled."""
    if os.environ.get(INTEGRATION_ENV) == "1":
        return
    skip = pytest.mark.skip(reason=f"set {INTEGRATION_ENV}=1 to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
