"""
Peer engine backed by aiortc.

aiortc implements WebRTC (ICE, DTLS, SCTP data channels) on asyncio. This
module adapts its event-emitter API to the callback protocols in
`rtconn.engine.types`.

What maps across:
    - ICE servers go into RTCConfiguration.
    - Connection states map one to one onto SessionState.
    - Data channel messages are buffered from the moment a channel exists,
      so nothing is lost between "open" and detach().

What does not:
    aiortc exposes no knobs for candidate network types, interface
    filtering, 1:1 NAT addresses, port ranges, UDP muxing, the answering
    DTLS role or caller-supplied certificates. Settings for those are
    logged and ignored.

References:
    - https://aiortc.readthedocs.io/en/latest/api.html
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Final

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError

from ..addr import PeerAddr
from ..errors import SessionUnavailableError, StreamClosedError
from .settings import DTLSRole, EngineSettings
from .types import DataChannel, SessionDescription, SessionState

logger = logging.getLogger(__name__)

_STATES: Final[dict[str, SessionState]] = {
    "new": SessionState.NEW,
    "connecting": SessionState.CONNECTING,
    "connected": SessionState.CONNECTED,
    "disconnected": SessionState.DISCONNECTED,
    "failed": SessionState.FAILED,
    "closed": SessionState.CLOSED,
}
"""aiortc connectionState strings to SessionState."""

_EOF: Final = b""
"""Marker queued when a channel closes."""


def _ignored_settings(settings: EngineSettings) -> list[str]:
    """Names of settings that are set but have no aiortc equivalent."""
    ignored = []
    if settings.network_types:
        ignored.append("network_types")
    if settings.interface_filter is not None:
        ignored.append("interface_filter")
    if settings.nat_1to1_ips is not None:
        ignored.append("nat_1to1_ips")
    if settings.port_range is not None:
        ignored.append("port_range")
    if settings.udp_mux is not None:
        ignored.append("udp_mux")
    if settings.answering_dtls_role is not DTLSRole.AUTO:
        ignored.append("answering_dtls_role")
    if settings.certificates:
        ignored.append("certificates")
    return ignored


class AiortcStream:
    """Detached message stream of an open aiortc data channel."""

    def __init__(self, channel: RTCDataChannel, inbox: asyncio.Queue[bytes]) -> None:
        self._channel = channel
        self._inbox = inbox

    async def read(self) -> bytes:
        data = await self._inbox.get()
        if not data:
            # Keep EOF visible to later readers.
            self._inbox.put_nowait(_EOF)
        return data

    async def write(self, data: bytes) -> None:
        try:
            self._channel.send(data)
        except InvalidStateError as e:
            raise StreamClosedError(f"channel {self._channel.label!r} is not open") from e

    async def close(self) -> None:
        self._channel.close()


class AiortcChannel:
    """DataChannel adapter over RTCDataChannel."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self._detached = False
        channel.on("message", self._on_message)
        channel.on("close", self._on_close)

    @property
    def label(self) -> str:
        return self._channel.label

    def _on_message(self, message: bytes | str) -> None:
        if isinstance(message, str):
            message = message.encode()
        # Empty messages would read as end of stream.
        if message:
            self._inbox.put_nowait(message)

    def _on_close(self) -> None:
        self._inbox.put_nowait(_EOF)

    def on_open(self, callback: Callable[[], None]) -> None:
        if self._channel.readyState == "open":
            asyncio.get_running_loop().call_soon(callback)
        else:
            self._channel.once("open", callback)

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._channel.readyState == "closed":
            asyncio.get_running_loop().call_soon(callback)
        else:
            self._channel.once("close", callback)

    def detach(self) -> AiortcStream:
        if self._detached:
            raise StreamClosedError(f"channel {self.label!r} already detached")
        self._detached = True
        return AiortcStream(self._channel, self._inbox)


class AiortcPeer:
    """PeerSession adapter over RTCPeerConnection."""

    def __init__(self, pc: RTCPeerConnection) -> None:
        self._pc = pc
        self._state = SessionState.NEW
        self._state_callbacks: list[Callable[[SessionState], None]] = []
        self._channel_callbacks: list[Callable[[DataChannel], None]] = []
        pc.on("connectionstatechange", self._on_connection_state)
        pc.on("datachannel", self._on_datachannel)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    def _on_connection_state(self) -> None:
        state = _STATES.get(self._pc.connectionState)
        if state is None or state is self._state:
            return
        self._state = state
        for callback in list(self._state_callbacks):
            callback(state)

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        adapted = AiortcChannel(channel)
        for callback in list(self._channel_callbacks):
            callback(adapted)

    def on_state_change(self, callback: Callable[[SessionState], None]) -> None:
        self._state_callbacks.append(callback)

    def on_data_channel(self, callback: Callable[[DataChannel], None]) -> None:
        self._channel_callbacks.append(callback)

    def create_data_channel(self, label: str) -> AiortcChannel:
        try:
            return AiortcChannel(self._pc.createDataChannel(label))
        except InvalidStateError as e:
            raise SessionUnavailableError(str(e)) from e

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        # aiortc gathers all candidates before this returns.
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def wait_gathering_complete(self) -> None:
        if self._pc.iceGatheringState == "complete":
            return
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def on_gathering_state() -> None:
            if self._pc.iceGatheringState == "complete" and not done.done():
                done.set_result(None)

        self._pc.on("icegatheringstatechange", on_gathering_state)
        try:
            await done
        finally:
            self._pc.remove_listener("icegatheringstatechange", on_gathering_state)

    def selected_path(self) -> tuple[PeerAddr, PeerAddr] | None:
        # aiortc has no public accessor for the nominated pair.
        sctp = self._pc.sctp
        if sctp is None:
            return None
        connection = getattr(sctp.transport.transport, "_connection", None)
        nominated = getattr(connection, "_nominated", None) or {}
        pair = nominated.get(1)
        if pair is None:
            return None
        local, remote = pair.local_candidate, pair.remote_candidate
        return (
            PeerAddr(local.host, local.port, local.transport.lower()),
            PeerAddr(remote.host, remote.port, remote.transport.lower()),
        )

    async def close(self) -> None:
        await self._pc.close()


class AiortcEngine:
    """PeerEngine building aiortc peer connections."""

    def new_session(self, settings: EngineSettings, *, answering: bool) -> AiortcPeer:
        ignored = _ignored_settings(settings)
        if ignored:
            logger.warning("aiortc engine ignores settings: %s", ", ".join(ignored))
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=list(server.urls),
                    username=server.username,
                    credential=server.credential,
                )
                for server in settings.ice_servers
            ]
        )
        logger.debug("Creating aiortc session (answering=%s)", answering)
        return AiortcPeer(RTCPeerConnection(configuration=configuration))
