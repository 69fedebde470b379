"""
Interfaces between rtconn and the peer engine.

The engine owns everything below the data channel: ICE, NAT traversal,
DTLS and SCTP. rtconn only needs to:
    - create sessions and data channels,
    - run offer/answer on a session,
    - learn when sessions change state and when channels open or close,
    - read and write messages on an open channel.

Engines report events through plain callbacks. rtconn callbacks never block
and never take locks. They resolve futures, put on queues or schedule tasks.
Engines must invoke callbacks on the event loop thread.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import IntEnum
from typing import Literal, Protocol, runtime_checkable

from ..addr import PeerAddr
from ..types import StrictBaseModel
from .settings import EngineSettings


class SessionState(IntEnum):
    """
    Connection state of a session, ordered by lifecycle.

    Everything after CONNECTED is terminal for rtconn: the session is closed
    and dropped from its pool.
    """

    NEW = 0
    CONNECTING = 1
    CONNECTED = 2
    DISCONNECTED = 3
    FAILED = 4
    CLOSED = 5

    @property
    def is_terminal(self) -> bool:
        """True once the session can no longer carry streams."""
        return self > SessionState.CONNECTED


class SessionDescription(StrictBaseModel):
    """
    An offer or answer.

    Encoded as a JSON object with `type` and `sdp` keys, the same shape
    browsers use, so blobs can be passed to other WebRTC stacks as is.
    """

    type: Literal["offer", "answer"]
    """Role of the description."""

    sdp: str
    """Session description protocol body."""

    def encode(self) -> bytes:
        """Serialize to the signaling blob."""
        return self.model_dump_json().encode()

    @classmethod
    def decode(cls, blob: bytes) -> SessionDescription:
        """
        Parse a signaling blob.

        Raises:
            pydantic.ValidationError: If the blob is not a valid description.
        """
        return cls.model_validate_json(blob)


@runtime_checkable
class RawStream(Protocol):
    """Message-oriented byte stream of one open data channel."""

    async def read(self) -> bytes:
        """Return the next message. Empty bytes means end of stream."""
        ...

    async def write(self, data: bytes) -> None:
        """Send one message."""
        ...

    async def close(self) -> None:
        """Close the channel. Idempotent."""
        ...


@runtime_checkable
class DataChannel(Protocol):
    """A data channel that may not be open yet."""

    @property
    def label(self) -> str:
        """Label chosen by the side that created the channel."""
        ...

    def on_open(self, callback: Callable[[], None]) -> None:
        """
        Register the open callback.

        Fires once. If the channel is already open, fires on the next loop
        iteration.
        """
        ...

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register the close callback. Fires once."""
        ...

    def detach(self) -> RawStream:
        """
        Take over the channel's message stream.

        Only valid once the channel is open. Messages received before the
        call are not lost.
        """
        ...


@runtime_checkable
class PeerSession(Protocol):
    """One peer connection, able to carry many data channels."""

    @property
    def state(self) -> SessionState:
        """Current connection state."""
        ...

    @property
    def local_description(self) -> SessionDescription | None:
        """The applied local description, with gathered candidates."""
        ...

    def on_state_change(self, callback: Callable[[SessionState], None]) -> None:
        """Register a state-change callback."""
        ...

    def on_data_channel(self, callback: Callable[[DataChannel], None]) -> None:
        """Register a callback for channels the remote side creates."""
        ...

    def create_data_channel(self, label: str) -> DataChannel:
        """
        Create an outbound data channel.

        Raises:
            SessionUnavailableError: If the session cannot carry new channels.
        """
        ...

    async def create_offer(self) -> SessionDescription:
        """Generate an offer."""
        ...

    async def create_answer(self) -> SessionDescription:
        """Generate an answer to the applied remote offer."""
        ...

    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply a local description and start candidate gathering."""
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote side's description."""
        ...

    async def wait_gathering_complete(self) -> None:
        """Wait until candidate gathering has finished."""
        ...

    def selected_path(self) -> tuple[PeerAddr, PeerAddr] | None:
        """Local and remote address of the selected candidate pair, if any."""
        ...

    async def close(self) -> None:
        """Close the session and all its channels. Idempotent."""
        ...


@runtime_checkable
class PeerEngine(Protocol):
    """Factory for peer sessions."""

    def new_session(self, settings: EngineSettings, *, answering: bool) -> PeerSession:
        """Create a session. `answering` is True for sessions built from a remote offer."""
        ...
