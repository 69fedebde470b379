"""
Outbound side: dial a label, get a Conn.

Each dial needs a data channel on a connected session. Where it comes from
depends on the reuse policy:

    reuse_session=False    Every dial negotiates its own session.
    reuse_session=True     The first dial negotiates a session and caches
                           it. Later dials open extra channels on the cached
                           session until it dies, then negotiate a new one.

Negotiation (offering side):
    1. Create the engine session and the first data channel.
    2. Create an offer, apply it locally, wait for candidate gathering.
    3. Post the encoded offer to the signal and get a correlation ID.
    4. Poll the signal for the answer every answer_poll_interval seconds.
    5. Decode the answer and apply it as the remote description.

Failures are raised as SignalingError tagged with the phase. The half-built
session is closed and dropped, so a failed dial leaves nothing behind.

Without a signal the dialer negotiates manually: local_description() hands
out the pending offer and set_remote_description() applies the answer,
however the application chooses to move them between peers.

Session creation and reuse decisions run under one lock. Waiting for the
channel to open does not.
"""

from __future__ import annotations

import asyncio
import logging
import random

from .config import Config
from .conn import Conn
from .engine.types import PeerSession, SessionDescription, SessionState
from .errors import (
    AnswerNotReadyError,
    NegotiationPhase,
    SessionUnavailableError,
    signaling_phase,
)
from .session import Session, SessionPool

logger = logging.getLogger(__name__)


class Dialer:
    """
    Opens outbound streams.

    Usage:
        dialer = Config(signal=signal).new_dialer()
        conn = await dialer.dial("chat", timeout=10)
    """

    def __init__(self, config: Config) -> None:
        self._config = config
        self._signal = config.signal
        self._engine = config.resolve_engine()
        self._settings = config.engine_settings()
        self._log = config.logger or logger
        self._pool = SessionPool(
            name="dialer",
            idle_timeout=config.idle_timeout,
            rng=random.Random(config.seed),
            log=self._log,
        )
        self._lock = asyncio.Lock()
        self._cached: int | None = None

        # Manual signaling: offers waiting to be picked up, and the session
        # waiting for its answer.
        self._manual_offers: asyncio.Queue[bytes] = asyncio.Queue()
        self._manual_pending: tuple[PeerSession, asyncio.Future[None]] | None = None

    async def __aenter__(self) -> Dialer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def session_count(self) -> int:
        """Number of live sessions this dialer created."""
        return len(self._pool)

    @property
    def session_state(self) -> SessionState | None:
        """State of the cached session, or None when nothing is cached."""
        if self._cached is None:
            return None
        session = self._pool.get(self._cached)
        return session.state if session is not None else None

    async def dial(self, label: str, *, timeout: float | None = None) -> Conn:
        """
        Open a stream labelled `label`.

        Args:
            label: Data channel label, visible to the accepting side.
            timeout: Seconds allowed for the whole dial. None waits forever.

        Returns:
            An open Conn.

        Raises:
            TimeoutError: If the timeout elapses, or is not positive.
            SignalingError: If negotiation fails.
            StreamClosedError: If the channel closes before opening.
        """
        if timeout is not None and timeout <= 0:
            raise TimeoutError(f"dial {label!r}: timeout already elapsed")
        async with asyncio.timeout(timeout):
            return await self._dial(label)

    async def _dial(self, label: str) -> Conn:
        conn = Conn(
            label,
            idle_timeout=self._config.idle_timeout,
            max_message_size=self._config.max_message_size,
            mtu=self._config.mtu,
        )
        try:
            async with self._lock:
                session = await self._next_channel(label, conn)
            await conn.wait_open()
        except BaseException:
            await conn.close()
            raise
        conn.set_path(session.peer.selected_path())
        self._log.debug("Dialed %r on session %d", label, session.session_id)
        return conn

    async def _next_channel(self, label: str, conn: Conn) -> Session:
        """Create the channel for `conn`, reusing the cached session when allowed. Lock held."""
        if self._config.reuse_session and self._cached is not None:
            session = self._pool.get(self._cached)
            if session is not None and not session.state.is_terminal:
                try:
                    conn.hold(await self._pool.open_stream(session.session_id))
                    conn.watch(session.peer.create_data_channel(label))
                    return session
                except SessionUnavailableError as e:
                    self._log.info(
                        "Cached session %d unusable (%s), negotiating a new one",
                        session.session_id,
                        e,
                    )
                    if conn.handle is not None:
                        await conn.handle.release()
                    await self._pool.discard(session, reason="evicted from cache")
            self._cached = None

        session = await self._start_session(label, conn)
        if self._config.reuse_session:
            self._cached = session.session_id
        return session

    async def _start_session(self, label: str, conn: Conn) -> Session:
        """Negotiate a fresh session whose first channel feeds `conn`. Lock held."""
        with signaling_phase(NegotiationPhase.SESSION_SETUP):
            peer = self._engine.new_session(self._settings, answering=False)
        session = await self._pool.add(peer)
        try:
            with signaling_phase(NegotiationPhase.SESSION_SETUP):
                conn.hold(await self._pool.open_stream(session.session_id))
                conn.watch(peer.create_data_channel(label))
            await self._negotiate(peer)
        except BaseException:
            await self._pool.discard(session, reason="negotiation failed")
            raise
        return session

    async def _negotiate(self, peer: PeerSession) -> None:
        with signaling_phase(NegotiationPhase.OFFER_CREATE):
            await peer.set_local_description(await peer.create_offer())
            await peer.wait_gathering_complete()
            local = peer.local_description
            if local is None:
                raise SessionUnavailableError("no local description after gathering")
            offer = local.encode()

        if self._signal is None:
            await self._await_manual_answer(peer, offer)
            return

        with signaling_phase(NegotiationPhase.OFFER_SEND):
            correlation_id = await self._signal.offer(offer)
        try:
            with signaling_phase(NegotiationPhase.ANSWER_RECEIVE):
                answer = await self._read_answer(correlation_id)
                await peer.set_remote_description(SessionDescription.decode(answer))
        except BaseException:
            self._forget_offer(correlation_id)
            raise

    def _forget_offer(self, correlation_id: int) -> None:
        """Let the signal drop an offer this dialer gave up on, if it supports that."""
        forget = getattr(self._signal, "forget", None)
        if forget is not None:
            forget(correlation_id)

    async def _read_answer(self, correlation_id: int) -> bytes:
        assert self._signal is not None
        while True:
            try:
                return await self._signal.read_answer(correlation_id)
            except AnswerNotReadyError:
                await asyncio.sleep(self._config.answer_poll_interval)

    async def _await_manual_answer(self, peer: PeerSession, offer: bytes) -> None:
        answered: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._manual_pending = (peer, answered)
        self._manual_offers.put_nowait(offer)
        try:
            await answered
        finally:
            self._manual_pending = None

    async def local_description(self) -> bytes:
        """
        Manual signaling: wait for the next offer a dial produces.

        The matching dial is blocked until set_remote_description() is called
        with the peer's answer.
        """
        return await self._manual_offers.get()

    async def set_remote_description(self, answer: bytes) -> None:
        """
        Manual signaling: apply the peer's answer to the pending dial.

        Raises:
            SessionUnavailableError: If no dial is waiting for an answer.
            SignalingError: If the answer cannot be decoded or applied. The
                pending dial fails with the same error.
        """
        pending = self._manual_pending
        if pending is None:
            raise SessionUnavailableError("no dial is waiting for an answer")
        peer, answered = pending
        try:
            with signaling_phase(NegotiationPhase.ANSWER_RECEIVE):
                await peer.set_remote_description(SessionDescription.decode(answer))
        except Exception as e:
            if not answered.done():
                answered.set_exception(e)
            raise
        if not answered.done():
            answered.set_result(None)

    async def close(self) -> None:
        """Close every session this dialer created."""
        self._cached = None
        await self._pool.close_all()
