"""
Stream sockets over peer-to-peer data channel sessions.

rtconn hides offer/answer negotiation, session pooling and data channel
events behind a small socket-like API:

    Dialer.dial(label)    -> Conn
    Listener.accept()     -> Conn
    Conn.read / write / close / set_deadline

Peers exchange session descriptions through a Signal. Sessions are built
by a PeerEngine (aiortc by default).
"""

from .addr import PeerAddr
from .config import Config
from .conn import Conn
from .dialer import Dialer
from .engine import (
    CandidateType,
    DTLSRole,
    EngineSettings,
    IceServer,
    NAT1To1IPs,
    NetworkType,
    PeerEngine,
    PortRange,
    SessionDescription,
    SessionState,
)
from .errors import (
    AnswerNotReadyError,
    DeadlineExceededError,
    DeadlineInPastError,
    ListenerClosedError,
    ListenerStateError,
    NegotiationPhase,
    PayloadTooLargeError,
    SessionUnavailableError,
    ShortBufferError,
    SignalingError,
    StreamClosedError,
    TransportError,
    UnknownCorrelationError,
)
from .listener import Listener, ListenerStatus
from .signal import DebugSignal, Signal

__all__ = [
    # Endpoints
    "Config",
    "Conn",
    "Dialer",
    "Listener",
    "ListenerStatus",
    "PeerAddr",
    # Signaling
    "DebugSignal",
    "Signal",
    # Engine
    "CandidateType",
    "DTLSRole",
    "EngineSettings",
    "IceServer",
    "NAT1To1IPs",
    "NetworkType",
    "PeerEngine",
    "PortRange",
    "SessionDescription",
    "SessionState",
    # Errors
    "AnswerNotReadyError",
    "DeadlineExceededError",
    "DeadlineInPastError",
    "ListenerClosedError",
    "ListenerStateError",
    "NegotiationPhase",
    "PayloadTooLargeError",
    "SessionUnavailableError",
    "ShortBufferError",
    "SignalingError",
    "StreamClosedError",
    "TransportError",
    "UnknownCorrelationError",
]
