"""
Length-prefixed framing for links with a small MTU.

Some paths drop or fragment large SCTP messages badly. With framing
enabled, each message is prefixed with its length and cut into chunks of at
most `mtu` bytes. The reader joins chunks back together and returns whole
messages.

Wire format:

    +----------------+------------------------+
    | length (2B BE) | payload (length bytes) |
    +----------------+------------------------+

The two-byte prefix caps a message at 65535 bytes. Larger writes are
rejected before anything is sent. Zero-length frames carry nothing and are
skipped by the reader.
"""

from __future__ import annotations

import logging
import struct
from typing import Final

from .engine.types import RawStream
from .errors import PayloadTooLargeError

logger = logging.getLogger(__name__)

FRAME_HEADER_SIZE: Final[int] = 2
"""Size of the big-endian length prefix."""

MAX_FRAME_PAYLOAD: Final[int] = 0xFFFF
"""Largest payload the length prefix can describe."""

_HEADER: Final = struct.Struct(">H")


def encode_frame(payload: bytes) -> bytes:
    """
    Prefix a payload with its length.

    Raises:
        PayloadTooLargeError: If the payload does not fit the prefix.
    """
    if len(payload) > MAX_FRAME_PAYLOAD:
        raise PayloadTooLargeError(len(payload), MAX_FRAME_PAYLOAD)
    return _HEADER.pack(len(payload)) + payload


class FramedStream:
    """
    RawStream wrapper adding length prefixes and MTU chunking.

    Behaves like the wrapped stream: read() returns one whole message, and
    empty bytes mean end of stream.
    """

    def __init__(self, raw: RawStream, mtu: int) -> None:
        if mtu <= 0:
            raise ValueError(f"mtu must be positive, got {mtu}")
        self._raw = raw
        self._mtu = mtu
        self._buffer = bytearray()
        self._torn = False

    @property
    def torn(self) -> bool:
        """
        True once a write stopped after part of its frame went out.

        The peer's reader is then out of step with the frame boundaries and
        would misparse every later frame, so the stream must not be written
        to again.
        """
        return self._torn

    async def write(self, data: bytes) -> None:
        frame = encode_frame(data)
        sent = 0
        try:
            for offset in range(0, len(frame), self._mtu):
                await self._raw.write(frame[offset : offset + self._mtu])
                sent += 1
        except BaseException:
            if sent:
                self._torn = True
            raise

    async def read(self) -> bytes:
        while True:
            payload = self._pop_frame()
            if payload:
                return payload
            if payload is not None:
                continue

            chunk = await self._raw.read()
            if not chunk:
                if self._buffer:
                    logger.debug("Dropping %d bytes of truncated frame at EOF", len(self._buffer))
                    self._buffer.clear()
                return b""
            self._buffer.extend(chunk)

    def _pop_frame(self) -> bytes | None:
        """Remove and return the first complete payload, or None if incomplete."""
        if len(self._buffer) < FRAME_HEADER_SIZE:
            return None
        (length,) = _HEADER.unpack_from(self._buffer)
        end = FRAME_HEADER_SIZE + length
        if len(self._buffer) < end:
            return None
        payload = bytes(self._buffer[FRAME_HEADER_SIZE:end])
        del self._buffer[:end]
        return payload

    async def close(self) -> None:
        await self._raw.close()
