"""
Peer engine interfaces and the aiortc-backed implementation.

The aiortc adapter lives in `rtconn.engine.rtc` and is imported on demand,
so code that brings its own engine never loads aiortc.
"""

from .settings import (
    CandidateType,
    DTLSRole,
    EngineSettings,
    IceServer,
    NAT1To1IPs,
    NetworkType,
    PortRange,
)
from .types import (
    DataChannel,
    PeerEngine,
    PeerSession,
    RawStream,
    SessionDescription,
    SessionState,
)

__all__ = [
    # Settings
    "CandidateType",
    "DTLSRole",
    "EngineSettings",
    "IceServer",
    "NAT1To1IPs",
    "NetworkType",
    "PortRange",
    # Interfaces
    "DataChannel",
    "PeerEngine",
    "PeerSession",
    "RawStream",
    "SessionDescription",
    "SessionState",
]
