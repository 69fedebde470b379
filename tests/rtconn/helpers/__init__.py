"""Test helpers for rtconn unit tests."""

from __future__ import annotations

from typing import Any

from rtconn.conn import Conn

from .engine import (
    LoopbackChannel,
    LoopbackEngine,
    LoopbackPeer,
    LoopbackStream,
    link_channels,
    open_channel_pair,
)


async def open_conn_pair(
    label: str = "test", **conn_kwargs: Any
) -> tuple[Conn, Conn, LoopbackChannel, LoopbackChannel]:
    """
    Two open Conns talking to each other over linked loopback channels.

    Keyword arguments are passed to both Conn constructors.
    """
    a, b = open_channel_pair(label)
    left = Conn(label, **conn_kwargs)
    right = Conn(label, **conn_kwargs)
    left.watch(a)
    right.watch(b)
    a.open()
    b.open()
    await left.wait_open()
    await right.wait_open()
    return left, right, a, b


__all__ = [
    "LoopbackChannel",
    "LoopbackEngine",
    "LoopbackPeer",
    "LoopbackStream",
    "link_channels",
    "open_channel_pair",
    "open_conn_pair",
]
