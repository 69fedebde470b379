"""
Shared pytest fixtures for rtconn tests.

Dialers and listeners built here share one LoopbackEngine and one
DebugSignal, so they negotiate with each other entirely in memory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from rtconn import Config, DebugSignal, Dialer, Listener
from tests.rtconn.helpers import LoopbackEngine

# -----------------------------------------------------------------------------
# Engine and Signal Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def engine() -> LoopbackEngine:
    """In-memory engine shared by both endpoints."""
    return LoopbackEngine()


@pytest.fixture
def signal() -> DebugSignal:
    """In-memory signal with room for eight pending offers."""
    return DebugSignal(8, seed=1)


@pytest.fixture
def make_config(engine: LoopbackEngine, signal: DebugSignal) -> Callable[..., Config]:
    """
    Factory fixture for Config instances.

    Defaults wire in the shared engine and signal and tighten polling so
    tests run fast. Keyword arguments override any field.
    """

    def _make(**overrides: Any) -> Config:
        fields: dict[str, Any] = {
            "engine": engine,
            "signal": signal,
            "answer_poll_interval": 0.005,
            "poll_interval": 0.01,
            "negotiation_timeout": 2.0,
            "seed": 7,
        }
        fields.update(overrides)
        return Config(**fields)

    return _make


# -----------------------------------------------------------------------------
# Endpoint Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
async def listener(make_config: Callable[..., Config]) -> AsyncIterator[Listener]:
    """Running listener on the shared signal."""
    async with make_config().new_listener() as running:
        yield running


@pytest.fixture
async def dialer(make_config: Callable[..., Config]) -> AsyncIterator[Dialer]:
    """Dialer negotiating a fresh session per dial."""
    async with make_config().new_dialer() as client:
        yield client


@pytest.fixture
async def reuse_dialer(make_config: Callable[..., Config]) -> AsyncIterator[Dialer]:
    """Dialer multiplexing every dial over one cached session."""
    async with make_config(reuse_session=True).new_dialer() as client:
        yield client
