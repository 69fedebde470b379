"""
Session pool with idle eviction.

Every negotiated session lives in exactly one pool, owned by the Dialer or
Listener that created it. The pool is an arena: sessions are keyed by a
random 64-bit ID, and streams refer back to their session through a
StreamHandle (session ID plus stream ID) rather than holding the session.

Lifecycle of a pooled session:

    NEW -> CONNECTING -> CONNECTED -> (DISCONNECTED | FAILED | CLOSED)
                             |
                             +-- idle eviction armed

    1. Added when negotiation starts.
    2. On CONNECTED, idle eviction is armed if an idle timeout is set.
       Whenever the session has had zero active streams for the whole
       timeout, it is closed and removed.
    3. On any terminal state, it is closed and removed at once.

Engine state callbacks only post the new state to a per-session queue. A
supervisor task drains the queue and does the actual work, so no lock is
ever taken from inside an engine callback.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from .engine.types import PeerSession, SessionState
from .errors import SessionUnavailableError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Session:
    """A negotiated peer session and the streams it carries."""

    session_id: int
    """Pool-unique random identifier."""

    peer: PeerSession
    """Engine session."""

    stream_ids: set[int] = field(default_factory=set)
    """IDs of streams currently open on this session."""

    closed: bool = False
    """Set once close() has started."""

    connected: bool = False
    """Set the first time the engine reports CONNECTED."""

    _next_stream_id: int = 1
    """Next stream ID to hand out."""

    _states: asyncio.Queue[SessionState] = field(default_factory=asyncio.Queue)
    """State changes posted by the engine callback."""

    _empty: asyncio.Event = field(default_factory=asyncio.Event)
    """Set while the session carries no streams."""

    _busy: asyncio.Event = field(default_factory=asyncio.Event)
    """Set while the session carries at least one stream."""

    _tasks: set[asyncio.Task[None]] = field(default_factory=set)
    """Supervisor and eviction tasks."""

    def __post_init__(self) -> None:
        self._empty.set()

    @property
    def state(self) -> SessionState:
        """Current engine state."""
        return self.peer.state

    def _add_stream(self) -> int:
        stream_id = self._next_stream_id
        self._next_stream_id += 1
        self.stream_ids.add(stream_id)
        self._empty.clear()
        self._busy.set()
        return stream_id

    def _remove_stream(self, stream_id: int) -> bool:
        if stream_id not in self.stream_ids:
            return False
        self.stream_ids.discard(stream_id)
        if not self.stream_ids:
            self._busy.clear()
            self._empty.set()
        return True

    async def close(self) -> None:
        """Stop background tasks and close the engine session. Idempotent."""
        if self.closed:
            return
        self.closed = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        await self.peer.close()


@dataclass(frozen=True, slots=True)
class StreamHandle:
    """Reference from a stream back to its slot in the pool."""

    session_id: int
    """Session the stream runs on."""

    stream_id: int
    """Stream identity within that session."""

    pool: SessionPool
    """Pool that owns the session."""

    async def release(self) -> None:
        """Drop the stream from its session. Idempotent."""
        await self.pool.release_stream(self)


class SessionPool:
    """
    Arena of sessions owned by one Dialer or Listener.

    Mutations go through the pool lock. Lookups do not need it.
    """

    def __init__(
        self,
        *,
        name: str,
        idle_timeout: float | None,
        rng: random.Random,
        log: logging.Logger | None = None,
    ) -> None:
        """
        Create an empty pool.

        Args:
            name: Owner name used in log lines ("dialer", "listener").
            idle_timeout: Seconds a connected session may carry no streams
                before it is closed. None disables eviction.
            rng: Source of session IDs.
            log: Logger to use instead of the module logger.
        """
        self._name = name
        self._idle_timeout = idle_timeout
        self._rng = rng
        self._log = log or logger
        self._sessions: dict[int, Session] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: int) -> Session | None:
        """Look up a live session."""
        return self._sessions.get(session_id)

    async def add(self, peer: PeerSession) -> Session:
        """Register a new engine session under a fresh ID and start supervising it."""
        async with self._lock:
            session_id = self._rng.getrandbits(64)
            while session_id in self._sessions:
                session_id = self._rng.getrandbits(64)
            session = Session(session_id=session_id, peer=peer)
            self._sessions[session_id] = session

        peer.on_state_change(session._states.put_nowait)
        self._spawn(session, self._supervise(session))
        self._log.debug("%s session %d created", self._name, session_id)
        return session

    async def open_stream(self, session_id: int) -> StreamHandle:
        """
        Reserve a stream slot on a session.

        Raises:
            SessionUnavailableError: If the session is gone or terminal.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.closed or session.state.is_terminal:
                raise SessionUnavailableError(f"session {session_id} is not available")
            stream_id = session._add_stream()
        return StreamHandle(session_id=session_id, stream_id=stream_id, pool=self)

    async def release_stream(self, handle: StreamHandle) -> None:
        """Drop a stream slot. Unknown sessions and streams are ignored."""
        async with self._lock:
            session = self._sessions.get(handle.session_id)
            if session is None:
                return
            if session._remove_stream(handle.stream_id):
                self._log.debug(
                    "%s session %d stream %d released, %d active",
                    self._name,
                    handle.session_id,
                    handle.stream_id,
                    len(session.stream_ids),
                )

    async def discard(self, session: Session, reason: str = "closed") -> None:
        """Remove a session from the pool and close it. Idempotent."""
        async with self._lock:
            removed = self._sessions.pop(session.session_id, None) is not None
            remaining = len(self._sessions)
        if removed:
            self._log.info(
                "%s session %d %s, %d remain", self._name, session.session_id, reason, remaining
            )
        await session.close()

    async def close_all(self) -> None:
        """Close and remove every session."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
        if sessions:
            self._log.info("%s closed %d sessions", self._name, len(sessions))

    def _spawn(self, session: Session, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        session._tasks.add(task)
        task.add_done_callback(session._tasks.discard)

    async def _supervise(self, session: Session) -> None:
        """Apply engine state changes until the session ends."""
        while not session.closed:
            state = await session._states.get()
            if state.is_terminal:
                await self.discard(session, reason=f"ended ({state.name})")
                return
            if state is SessionState.CONNECTED and not session.connected:
                session.connected = True
                self._log.info(
                    "%s session %d connected, %d in pool",
                    self._name,
                    session.session_id,
                    len(self._sessions),
                )
                if self._idle_timeout is not None:
                    self._spawn(session, self._evict_when_idle(session, self._idle_timeout))

    async def _evict_when_idle(self, session: Session, timeout: float) -> None:
        """Close the session once it has carried no streams for `timeout` seconds."""
        while not session.closed:
            await session._empty.wait()
            try:
                async with asyncio.timeout(timeout):
                    await session._busy.wait()
            except TimeoutError:
                async with self._lock:
                    if session.stream_ids or self._sessions.get(session.session_id) is not session:
                        continue
                    del self._sessions[session.session_id]
                    remaining = len(self._sessions)
                self._log.info(
                    "%s session %d idle for %gs, closing, %d remain",
                    self._name,
                    session.session_id,
                    timeout,
                    remaining,
                )
                await session.close()
                return
