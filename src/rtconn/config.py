"""
Configuration for dialers and listeners.

One Config describes both ends. Fields fall into two groups:

Core knobs:
    - signal: rendezvous for offer/answer blobs. None selects manual
      signaling (local_description / set_remote_description / answer).
    - engine: peer engine. None selects the aiortc engine.
    - reuse_session, idle_timeout, negotiation_timeout and the polling
      intervals that shape the lifecycle.
    - mtu and max_message_size for the Conn payload contract.

Engine pass-through:
    Network types, interface filter, 1:1 NAT IPs, port range, UDP mux,
    answering DTLS role, ICE servers and certificates. rtconn forwards these
    untouched to every new session through engine_settings().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Annotated, Any, Final

from pydantic import Field, model_validator

from .conn import DEFAULT_MAX_MESSAGE_SIZE
from .engine.settings import (
    DTLSRole,
    EngineSettings,
    IceServer,
    NAT1To1IPs,
    NetworkType,
    PortRange,
)
from .engine.types import PeerEngine
from .framing import MAX_FRAME_PAYLOAD
from .signal import Signal
from .types import StrictBaseModel

if TYPE_CHECKING:
    from .dialer import Dialer
    from .listener import Listener

DEFAULT_IDLE_TIMEOUT: Final[float] = 60.0
"""Seconds a stream or an emptied session may sit idle before it is closed."""

DEFAULT_NEGOTIATION_TIMEOUT: Final[float] = 10.0
"""Seconds the listener allows for answering one offer."""

DEFAULT_ANSWER_POLL_INTERVAL: Final[float] = 0.1
"""Seconds between polls for an answer that is not ready yet."""

DEFAULT_POLL_INTERVAL: Final[float] = 1.0
"""Seconds a suspended listener waits before checking its status again."""

DEFAULT_ACCEPT_BACKLOG: Final[int] = 64
"""Accepted connections that may wait for accept() before inbound streams stall."""


class Config(StrictBaseModel):
    """Settings shared by Dialer and Listener."""

    # ---- Core ----

    signal: Signal | None = None
    """Offer/answer carrier. None means manual signaling."""

    engine: PeerEngine | None = None
    """Peer engine. None means aiortc."""

    reuse_session: bool = False
    """Dialer only: open new streams on one cached session instead of negotiating each time."""

    idle_timeout: Annotated[float, Field(gt=0)] | None = DEFAULT_IDLE_TIMEOUT
    """Idle timeout for streams and emptied sessions. None disables idle closing."""

    negotiation_timeout: float = Field(default=DEFAULT_NEGOTIATION_TIMEOUT, gt=0)
    """Listener only: time allowed to answer one offer and open its streams."""

    answer_poll_interval: float = Field(default=DEFAULT_ANSWER_POLL_INTERVAL, gt=0)
    """Dialer only: delay between polls for a pending answer."""

    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    """Listener only: delay between status checks while not running."""

    accept_backlog: int = Field(default=DEFAULT_ACCEPT_BACKLOG, gt=0)
    """Listener only: capacity of the accept queue."""

    mtu: Annotated[int, Field(gt=0)] | None = None
    """Enables length-prefixed framing with chunks of at most this many bytes."""

    max_message_size: int = Field(default=DEFAULT_MAX_MESSAGE_SIZE, gt=0)
    """Largest payload a single Conn write may carry."""

    seed: int | None = None
    """Seed for session ID generation. None seeds from the OS."""

    logger: logging.Logger | None = None
    """Logger for dialer and listener events. None uses the module loggers."""

    # ---- Engine pass-through ----

    network_types: tuple[NetworkType, ...] = ()
    """Allowed candidate network types."""

    interface_filter: Callable[[str], bool] | None = None
    """Predicate selecting the interfaces to gather candidates on."""

    nat_1to1_ips: NAT1To1IPs | None = None
    """1:1 NAT address mapping."""

    port_range: PortRange | None = None
    """Ephemeral port range for local candidates."""

    udp_mux: Any = None
    """Engine-specific shared UDP socket multiplexer."""

    answering_dtls_role: DTLSRole = DTLSRole.AUTO
    """DTLS role used when answering."""

    ice_servers: tuple[IceServer, ...] = ()
    """STUN/TURN servers."""

    certificates: tuple[Any, ...] = ()
    """Engine-specific DTLS certificates."""

    @model_validator(mode="after")
    def check_framing(self) -> Config:
        """Framed messages cannot exceed what the length prefix can describe."""
        if self.mtu is not None and self.max_message_size > MAX_FRAME_PAYLOAD:
            raise ValueError(
                f"max_message_size {self.max_message_size} exceeds the "
                f"{MAX_FRAME_PAYLOAD}-byte framing limit"
            )
        return self

    def engine_settings(self) -> EngineSettings:
        """Collect the pass-through settings for PeerEngine.new_session."""
        return EngineSettings(
            network_types=self.network_types,
            interface_filter=self.interface_filter,
            nat_1to1_ips=self.nat_1to1_ips,
            port_range=self.port_range,
            udp_mux=self.udp_mux,
            answering_dtls_role=self.answering_dtls_role,
            ice_servers=self.ice_servers,
            certificates=self.certificates,
        )

    def resolve_engine(self) -> PeerEngine:
        """Return the configured engine, or a fresh aiortc engine."""
        if self.engine is not None:
            return self.engine
        from .engine.rtc import AiortcEngine

        return AiortcEngine()

    def new_dialer(self) -> Dialer:
        """Build a Dialer from this configuration."""
        from .dialer import Dialer

        return Dialer(self)

    def new_listener(self) -> Listener:
        """Build a Listener from this configuration. It still has to be started."""
        from .listener import Listener

        return Listener(self)
