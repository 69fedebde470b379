"""
Stream-socket view of one data channel.

A Conn is created before its channel opens. The owner (Dialer or Listener)
calls watch() to hook the channel's open and close events, then awaits
wait_open(). After that the Conn behaves like a socket:

    - read_into(buf) / read(n) return one message per call.
    - write(data) sends one message.
    - close() is idempotent and makes further reads return end of stream
      and further writes raise StreamClosedError.

Deadlines are absolute `time.monotonic()` values. A deadline only affects
calls that start after it was set.

Reads run through a single background task: at most one low-level read is
in flight per Conn, and its result lands in a queue that read calls wait
on. Another low-level read starts while more readers wait than messages are
queued, so concurrent reads each get a message. A read that times out leaves
the low-level read running, so the message it eventually returns is kept
for the next read. End of stream stays in the queue for every later reader.

When the peer closes the channel, writes fail at once but reads keep
returning what already arrived until end of stream.

An idle timer closes the Conn when no write succeeds for a whole idle
timeout. Reads do not count as activity.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from typing import Any, Final

from .addr import PeerAddr
from .engine.types import DataChannel, RawStream
from .errors import (
    DeadlineExceededError,
    DeadlineInPastError,
    PayloadTooLargeError,
    ShortBufferError,
    StreamClosedError,
)
from .framing import FramedStream
from .session import StreamHandle

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_SIZE: Final[int] = 65535
"""Largest payload a single write may carry."""

_EOF: Final = None
"""Queue marker for end of stream."""


class Conn:
    """
    One bidirectional message stream over a peer session.

    Usage:
        conn = await dialer.dial("chat")
        await conn.write(b"hello")
        reply = await conn.read()
        await conn.close()
    """

    def __init__(
        self,
        label: str,
        *,
        idle_timeout: float | None = None,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        mtu: int | None = None,
    ) -> None:
        """
        Create an unopened Conn.

        Args:
            label: Data channel label.
            idle_timeout: Seconds without a successful write before the Conn
                closes itself. None disables the timer.
            max_message_size: Largest payload a single write may carry.
            mtu: Enables length-prefixed framing with chunks of this size.
        """
        self._label = label
        self._idle_timeout = idle_timeout
        self._max_message_size = max_message_size
        self._mtu = mtu

        self._raw: RawStream | None = None
        self._opened: asyncio.Future[RawStream] = asyncio.get_running_loop().create_future()
        self._handle: StreamHandle | None = None
        self._local_addr: PeerAddr | None = None
        self._remote_addr: PeerAddr | None = None

        self._inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pending_read: asyncio.Task[None] | None = None
        self._readers = 0
        self._eof = False
        self._closed = False
        self._peer_closed = False
        self._idle = False
        self._idle_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

        self._read_deadline: float | None = None
        self._write_deadline: float | None = None

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open" if self._raw is not None else "pending"
        return f"Conn(label={self._label!r}, {state})"

    async def __aenter__(self) -> Conn:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ---- Properties ----

    @property
    def label(self) -> str:
        """Label of the underlying data channel."""
        return self._label

    @property
    def closed(self) -> bool:
        """True once close() has started or the channel was closed by the peer."""
        return self._closed or self._peer_closed

    @property
    def local_addr(self) -> PeerAddr | None:
        """Local end of the session's selected path, if the engine knows it."""
        return self._local_addr

    @property
    def remote_addr(self) -> PeerAddr | None:
        """Remote end of the session's selected path, if the engine knows it."""
        return self._remote_addr

    @property
    def handle(self) -> StreamHandle | None:
        """Slot of this stream in its session pool."""
        return self._handle

    @property
    def read_deadline(self) -> float | None:
        return self._read_deadline

    @property
    def write_deadline(self) -> float | None:
        return self._write_deadline

    # ---- Setup (used by Dialer and Listener) ----

    def hold(self, handle: StreamHandle) -> None:
        """Bind the pool slot this Conn releases on close."""
        self._handle = handle

    def watch(self, channel: DataChannel) -> None:
        """
        Hook the channel's open and close events.

        Must be called right after the channel is created or announced, before
        the loop gets a chance to deliver its open event.
        """

        def on_open() -> None:
            raw = channel.detach()
            if self._opened.done():
                # The opener gave up before the channel opened.
                self._spawn(raw.close())
                return
            self._opened.set_result(raw)

        def on_close() -> None:
            if not self._opened.done():
                self._opened.set_exception(
                    StreamClosedError(f"channel {self._label!r} closed before opening")
                )
            elif self._raw is not None and not self.closed:
                logger.debug("Channel %r closed by peer", self._label)
                self._peer_closed = True
                self._spawn(self._release())

        channel.on_open(on_open)
        channel.on_close(on_close)

    async def wait_open(self) -> None:
        """
        Wait for the watched channel to open, then start serving I/O.

        Raises:
            StreamClosedError: If the channel closed before opening.
        """
        raw = await self._opened
        if self._closed:
            await raw.close()
            raise StreamClosedError(f"conn {self._label!r} closed while opening")
        self._raw = FramedStream(raw, self._mtu) if self._mtu is not None else raw
        if self._idle_timeout is not None:
            self._idle_task = asyncio.create_task(self._idle_loop(self._idle_timeout))

    def set_path(self, path: tuple[PeerAddr, PeerAddr] | None) -> None:
        """Record the selected path once the engine reports it."""
        if path is not None:
            self._local_addr, self._remote_addr = path

    # ---- Deadlines ----

    @staticmethod
    def _check_deadline(deadline: float | None) -> None:
        if deadline is not None and deadline < time.monotonic():
            raise DeadlineInPastError(f"deadline {deadline:.3f} is in the past")

    def set_deadline(self, deadline: float | None) -> None:
        """
        Set both the read and the write deadline.

        Raises:
            DeadlineInPastError: If the deadline has passed. Nothing changes.
        """
        self._check_deadline(deadline)
        self._read_deadline = deadline
        self._write_deadline = deadline

    def set_read_deadline(self, deadline: float | None) -> None:
        """
        Set the read deadline. None clears it.

        Raises:
            DeadlineInPastError: If the deadline has passed. Nothing changes.
        """
        self._check_deadline(deadline)
        self._read_deadline = deadline

    def set_write_deadline(self, deadline: float | None) -> None:
        """
        Set the write deadline. None clears it.

        Raises:
            DeadlineInPastError: If the deadline has passed. Nothing changes.
        """
        self._check_deadline(deadline)
        self._write_deadline = deadline

    # ---- I/O ----

    async def read_into(self, buffer: bytearray | memoryview) -> int:
        """
        Read the next message into `buffer`.

        Returns:
            Number of bytes copied. 0 means end of stream.

        Raises:
            DeadlineExceededError: If the read deadline passes first.
            ShortBufferError: If the message is longer than the buffer. The
                buffer holds the first part and the rest is discarded.
        """
        if self._closed or self._eof:
            return 0

        deadline = self._read_deadline
        if deadline is not None and deadline <= time.monotonic():
            raise DeadlineExceededError("read deadline exceeded")

        self._readers += 1
        try:
            if self._inbox.qsize() < self._readers:
                self._start_read()
            if deadline is None:
                data = await self._inbox.get()
            else:
                try:
                    async with asyncio.timeout(deadline - time.monotonic()):
                        data = await self._inbox.get()
                except TimeoutError:
                    raise DeadlineExceededError("read deadline exceeded") from None
        finally:
            self._readers -= 1

        if data is _EOF:
            self._eof = True
            # Leave the marker for any other reader still waiting.
            self._inbox.put_nowait(_EOF)
            return 0

        n = min(len(buffer), len(data))
        buffer[:n] = data[:n]
        if len(data) > len(buffer):
            raise ShortBufferError(n, data[:n])
        return n

    async def read(self, n: int | None = None) -> bytes:
        """
        Read the next message.

        Args:
            n: Buffer size. Defaults to the maximum message size.

        Returns:
            The message. Empty bytes means end of stream.
        """
        buffer = bytearray(self._max_message_size if n is None else n)
        count = await self.read_into(buffer)
        return bytes(buffer[:count])

    async def write(self, data: bytes) -> int:
        """
        Send `data` as one message.

        With a write deadline set, a write still pending at the deadline is
        cancelled and DeadlineExceededError is raised. The peer may or may
        not see that message. On a framed Conn, a write that stops after
        some of its chunks went out closes the Conn, since the peer could no
        longer find frame boundaries. The peer then reads end of stream.

        Returns:
            Number of bytes written.

        Raises:
            StreamClosedError: If the Conn is closed.
            PayloadTooLargeError: If `data` exceeds the maximum message size.
                Nothing is sent.
            DeadlineExceededError: If the write deadline passes first.
        """
        if self.closed or self._raw is None:
            raise StreamClosedError(f"conn {self._label!r} is closed")
        if len(data) > self._max_message_size:
            raise PayloadTooLargeError(len(data), self._max_message_size)
        if not data:
            return 0

        deadline = self._write_deadline
        if deadline is not None and deadline <= time.monotonic():
            raise DeadlineExceededError("write deadline exceeded")
        try:
            if deadline is None:
                await self._raw.write(data)
            else:
                try:
                    async with asyncio.timeout(deadline - time.monotonic()):
                        await self._raw.write(data)
                except TimeoutError:
                    raise DeadlineExceededError("write deadline exceeded") from None
        except BaseException:
            raw = self._raw
            if isinstance(raw, FramedStream) and raw.torn:
                logger.debug("Write on %r stopped mid-frame, closing", self._label)
                await self.close()
            raise

        self._idle = False
        return len(data)

    async def close(self) -> None:
        """Close the stream and release its session slot. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(_EOF)

        current = asyncio.current_task()
        for task in (self._idle_task, self._pending_read):
            if task is not None and task is not current:
                task.cancel()

        raw = self._raw
        if raw is None:
            if not self._opened.done():
                self._opened.set_exception(
                    StreamClosedError(f"conn {self._label!r} closed while opening")
                )
                self._opened.exception()
            elif not self._opened.cancelled() and self._opened.exception() is None:
                # Opened but never attached.
                raw = self._opened.result()
        if raw is not None:
            await raw.close()
        if self._handle is not None:
            await self._handle.release()
        logger.debug("Conn %r closed", self._label)

    # ---- Background ----

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _release(self) -> None:
        """Give back the session slot of a stream the peer closed."""
        if self._idle_task is not None:
            self._idle_task.cancel()
        if self._handle is not None:
            await self._handle.release()

    def _start_read(self) -> None:
        if self._pending_read is None or self._pending_read.done():
            self._pending_read = asyncio.create_task(self._read_once())

    async def _read_once(self) -> None:
        assert self._raw is not None
        try:
            data = await self._raw.read()
        except Exception as e:
            logger.debug("Read on %r failed: %s", self._label, e)
            data = b""
        if not data:
            self._inbox.put_nowait(_EOF)
            return
        self._inbox.put_nowait(data)
        if self._readers > self._inbox.qsize():
            # More readers are waiting than messages are queued.
            self._pending_read = asyncio.create_task(self._read_once())

    async def _idle_loop(self, timeout: float) -> None:
        while not self.closed:
            self._idle = True
            await asyncio.sleep(timeout)
            if self._idle and not self.closed:
                logger.debug("Conn %r idle for %gs, closing", self._label, timeout)
                await self.close()
                return
