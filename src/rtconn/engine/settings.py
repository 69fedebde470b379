"""
Session settings forwarded to the peer engine.

rtconn never interprets these values. They are collected from Config into
one frozen bundle and handed to PeerEngine.new_session for every session,
dialed or answered. An engine is free to ignore what it cannot honor, but
should say so in its log.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import Field, model_validator

from ..types import StrictBaseModel


class NetworkType(StrEnum):
    """Candidate network types an engine may gather on."""

    UDP4 = "udp4"
    UDP6 = "udp6"
    TCP4 = "tcp4"
    TCP6 = "tcp6"


class CandidateType(StrEnum):
    """ICE candidate types."""

    HOST = "host"
    SRFLX = "srflx"
    PRFLX = "prflx"
    RELAY = "relay"


class DTLSRole(StrEnum):
    """DTLS role the answering side takes."""

    AUTO = "auto"
    """Let the engine pick (the answerer usually becomes the client)."""

    CLIENT = "client"
    SERVER = "server"


class IceServer(StrictBaseModel):
    """A STUN or TURN server."""

    urls: tuple[str, ...]
    """Server URLs, e.g. ("stun:stun.l.google.com:19302",)."""

    username: str | None = None
    """TURN username."""

    credential: str | None = None
    """TURN password."""


class NAT1To1IPs(StrictBaseModel):
    """Public addresses to advertise in place of local ones behind a 1:1 NAT."""

    ips: tuple[str, ...]
    """External IP addresses."""

    candidate_type: CandidateType = CandidateType.HOST
    """Whether the IPs replace host candidates or are added as srflx candidates."""

    @model_validator(mode="after")
    def check_candidate_type(self) -> NAT1To1IPs:
        """Only host and srflx candidates can carry 1:1 NAT addresses."""
        if self.candidate_type not in (CandidateType.HOST, CandidateType.SRFLX):
            raise ValueError("1:1 NAT IPs apply to host or srflx candidates only")
        return self


class PortRange(StrictBaseModel):
    """Inclusive range of local UDP ports for candidates."""

    min: int = Field(gt=0, le=65535)
    """Lowest port."""

    max: int = Field(gt=0, le=65535)
    """Highest port."""

    @model_validator(mode="after")
    def check_order(self) -> PortRange:
        """Reject inverted ranges."""
        if self.min > self.max:
            raise ValueError(f"port range {self.min}-{self.max} is inverted")
        return self


class EngineSettings(StrictBaseModel):
    """Everything a PeerEngine needs to build one session."""

    network_types: tuple[NetworkType, ...] = ()
    """Allowed candidate network types. Empty means engine default."""

    interface_filter: Callable[[str], bool] | None = None
    """Predicate on interface names. Interfaces it rejects are not gathered."""

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
    """Engine-specific DTLS certificates. Empty means generate per session."""
