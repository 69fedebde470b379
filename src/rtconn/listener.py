"""
Inbound side: answer offers, hand out Conns.

Status machine (every change is a compare-and-swap):

    NEW ----start----> RUNNING <----start---- SUSPENDED
                        |   |                    ^
                        |   +-----suspend--------+
                       stop                      |
                        v                       stop
                     STOPPED <-------------------+
                        |
                        +----start----> RUNNING

Accept loop (runs while the listener has a signal and is not STOPPED):
    - RUNNING: read the next offer and answer it in its own task, bounded
      by negotiation_timeout. A failed read is logged and retried at once.
    - NEW or SUSPENDED: sleep poll_interval, then look again.

Every offer gets its own session. Streams the remote side opens on it are
wrapped as Conns, waited on until open, and pushed onto the accept queue.
The queue is bounded, so a slow accept() caller stalls new streams rather
than buffering without limit.

Answering one offer:
    1. Create the engine session and register it in the pool.
    2. Decode the offer and apply it as the remote description.
    3. Create an answer, apply it locally, wait for candidate gathering.
    4. Post the encoded answer to the signal under the offer's ID.

A failure aborts that offer only. Its session is closed and the loop goes on.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from enum import IntEnum
from typing import Any

from .addr import PeerAddr
from .config import Config
from .conn import Conn
from .engine.types import DataChannel, SessionDescription
from .errors import (
    ListenerClosedError,
    ListenerStateError,
    NegotiationPhase,
    SessionUnavailableError,
    signaling_phase,
)
from .session import Session, SessionPool

logger = logging.getLogger(__name__)


class ListenerStatus(IntEnum):
    """Lifecycle status of a Listener."""

    NEW = 0
    """Built but never started."""

    RUNNING = 1
    """Answering offers and accepting streams."""

    SUSPENDED = 2
    """Not reading new offers. Existing sessions keep working."""

    STOPPED = 3
    """Shut down. All sessions closed, accept() fails."""


class Listener:
    """
    Accepts inbound streams.

    Usage:
        async with Config(signal=signal).new_listener() as listener:
            conn = await listener.accept()
            data = await conn.read()
    """

    def __init__(self, config: Config) -> None:
        self._config = config
        self._signal = config.signal
        self._engine = config.resolve_engine()
        self._settings = config.engine_settings()
        self._log = config.logger or logger
        self._pool = SessionPool(
            name="listener",
            idle_timeout=config.idle_timeout,
            rng=random.Random(config.seed),
            log=self._log,
        )

        self._status = ListenerStatus.NEW
        self._accepted: asyncio.Queue[Conn] = asyncio.Queue(maxsize=config.accept_backlog)
        self._stopped = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> Listener:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._status is not ListenerStatus.STOPPED:
            await self.stop()

    @property
    def status(self) -> ListenerStatus:
        """Current lifecycle status."""
        return self._status

    @property
    def session_count(self) -> int:
        """Number of live sessions."""
        return len(self._pool)

    @property
    def addr(self) -> PeerAddr | None:
        """
        Local address the listener is bound to.

        Always None: every answered session settles on its own path, so
        there is no single listening address. Per-stream addresses are on
        each accepted Conn.
        """
        return None

    # ---- Lifecycle ----

    def _transition(self, allowed: frozenset[ListenerStatus], to: ListenerStatus) -> bool:
        """Move to `to` if the current status is in `allowed`."""
        if self._status not in allowed:
            return False
        self._log.debug("Listener %s -> %s", self._status.name, to.name)
        self._status = to
        return True

    def start(self) -> None:
        """
        Start (or resume) answering offers. Needs a running event loop.

        Raises:
            ListenerStateError: If the listener is already running.
        """
        allowed = frozenset(
            {ListenerStatus.NEW, ListenerStatus.SUSPENDED, ListenerStatus.STOPPED}
        )
        if not self._transition(allowed, ListenerStatus.RUNNING):
            raise ListenerStateError(f"cannot start listener from {self._status.name}")
        self._stopped.clear()
        if self._signal is not None and (self._loop_task is None or self._loop_task.done()):
            self._loop_task = asyncio.create_task(self._accept_loop())

    def suspend(self) -> None:
        """
        Stop reading new offers. Sessions already negotiated keep working.

        Raises:
            ListenerStateError: If the listener is not running.
        """
        if not self._transition(frozenset({ListenerStatus.RUNNING}), ListenerStatus.SUSPENDED):
            raise ListenerStateError(f"cannot suspend listener from {self._status.name}")

    async def stop(self) -> None:
        """
        Stop the listener and close every session it answered.

        Blocked accept() calls fail with ListenerClosedError.

        Raises:
            ListenerStateError: If the listener is not running or suspended.
        """
        allowed = frozenset({ListenerStatus.RUNNING, ListenerStatus.SUSPENDED})
        if not self._transition(allowed, ListenerStatus.STOPPED):
            raise ListenerStateError(f"cannot stop listener from {self._status.name}")
        self._stopped.set()

        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        while not self._accepted.empty():
            await self._accepted.get_nowait().close()
        await self._pool.close_all()

    async def close(self) -> None:
        """Alias of stop()."""
        await self.stop()

    # ---- Accepting ----

    async def accept(self) -> Conn:
        """
        Wait for the next inbound stream.

        Raises:
            ListenerClosedError: If the listener is or becomes stopped.
        """
        if self._status is ListenerStatus.STOPPED:
            raise ListenerClosedError("listener is stopped")

        getter = asyncio.ensure_future(self._accepted.get())
        stopped = asyncio.ensure_future(self._stopped.wait())
        try:
            await asyncio.wait((getter, stopped), return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            if getter.done() and not getter.cancelled():
                await getter.result().close()
            raise
        finally:
            getter.cancel()
            stopped.cancel()

        if getter.done() and not getter.cancelled():
            return getter.result()
        raise ListenerClosedError("listener is stopped")

    async def answer(self, offer: bytes, *, timeout: float | None = None) -> bytes:
        """
        Manual signaling: answer an offer delivered out of band.

        Streams the dialer opens on the resulting session arrive through
        accept() like any other.

        Args:
            offer: Offer blob from the dialer's local_description().
            timeout: Seconds allowed. Defaults to negotiation_timeout.

        Returns:
            The answer blob to hand back to the dialer.

        Raises:
            ListenerClosedError: If the listener is stopped.
            SignalingError: If the offer cannot be answered.
            TimeoutError: If the timeout elapses, or is not positive.
        """
        if self._status is ListenerStatus.STOPPED:
            raise ListenerClosedError("listener is stopped")
        if timeout is None:
            timeout = self._config.negotiation_timeout
        elif timeout <= 0:
            raise TimeoutError("answer: timeout already elapsed")
        async with asyncio.timeout(timeout):
            _, answer = await self._answer_offer(offer)
        return answer

    async def _accept_loop(self) -> None:
        assert self._signal is not None
        while self._status is not ListenerStatus.STOPPED:
            if self._status is not ListenerStatus.RUNNING:
                await asyncio.sleep(self._config.poll_interval)
                continue
            try:
                correlation_id, offer = await self._signal.read_offer()
            except Exception as e:
                self._log.warning("Reading offer failed: %s", e)
                await asyncio.sleep(0)
                continue
            self._spawn(self._handle_offer(correlation_id, offer))

    async def _handle_offer(self, correlation_id: int, offer: bytes) -> None:
        assert self._signal is not None
        session: Session | None = None
        try:
            async with asyncio.timeout(self._config.negotiation_timeout):
                session, answer = await self._answer_offer(offer)
                with signaling_phase(NegotiationPhase.ANSWER_SEND):
                    await self._signal.answer(correlation_id, answer)
        except Exception as e:
            self._log.warning("Answering offer %d failed: %s", correlation_id, e)
            if session is not None:
                await self._pool.discard(session, reason="answer failed")
            return
        self._log.debug("Answered offer %d on session %d", correlation_id, session.session_id)

    async def _answer_offer(self, offer: bytes) -> tuple[Session, bytes]:
        with signaling_phase(NegotiationPhase.SESSION_SETUP):
            peer = self._engine.new_session(self._settings, answering=True)
        session = await self._pool.add(peer)
        peer.on_data_channel(self._inbound_channel_handler(session))
        try:
            with signaling_phase(NegotiationPhase.OFFER_RECEIVE):
                await peer.set_remote_description(SessionDescription.decode(offer))
            with signaling_phase(NegotiationPhase.ANSWER_CREATE):
                await peer.set_local_description(await peer.create_answer())
                await peer.wait_gathering_complete()
                local = peer.local_description
                if local is None:
                    raise SessionUnavailableError("no local description after gathering")
        except BaseException:
            await self._pool.discard(session, reason="negotiation failed")
            raise
        return session, local.encode()

    def _inbound_channel_handler(self, session: Session) -> Callable[[DataChannel], None]:
        def on_data_channel(channel: DataChannel) -> None:
            conn = Conn(
                channel.label,
                idle_timeout=self._config.idle_timeout,
                max_message_size=self._config.max_message_size,
                mtu=self._config.mtu,
            )
            conn.watch(channel)
            self._spawn(self._deliver(session, conn))

        return on_data_channel

    async def _deliver(self, session: Session, conn: Conn) -> None:
        """Wait for an inbound stream to open, then queue it for accept()."""
        try:
            conn.hold(await self._pool.open_stream(session.session_id))
            async with asyncio.timeout(self._config.negotiation_timeout):
                await conn.wait_open()
        except Exception as e:
            self._log.debug("Inbound stream %r dropped: %s", conn.label, e)
            await conn.close()
            return
        except asyncio.CancelledError:
            await conn.close()
            raise

        conn.set_path(session.peer.selected_path())
        try:
            await self._accepted.put(conn)
        except asyncio.CancelledError:
            await conn.close()
            raise
        self._log.debug("Stream %r queued on session %d", conn.label, session.session_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
