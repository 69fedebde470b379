"""Network address of one end of a selected candidate pair."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PeerAddr:
    """
    Host and port of one side of the path a session settled on.

    Populated from the engine's selected candidate pair once a stream opens.
    Purely informational: nothing in rtconn dials these addresses.
    """

    host: str
    """IP address or hostname of the candidate."""

    port: int
    """Port of the candidate."""

    network: str = "udp"
    """Transport protocol of the candidate."""

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"
