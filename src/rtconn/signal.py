"""
Out-of-band rendezvous for offer/answer blobs.

Two endpoints cannot open a session until they have swapped session
descriptions. rtconn does not care how the swap happens (HTTP, a message
broker, a shared database, copy and paste). It only needs something that
implements the Signal protocol below.

Exchange:
    1. The dialer posts its offer and gets back a correlation ID.
    2. The listener reads offers one at a time, with their IDs.
    3. The listener posts its answer under the offer's ID.
    4. The dialer polls for the answer under the same ID. Until the answer
       arrives, read_answer raises AnswerNotReadyError.

Blobs are opaque to the signal.

A signal may also provide `forget(correlation_id)`. The Dialer calls it for
offers it abandons (timeout, cancellation, bad answer) so the signal can
drop their state.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Protocol, runtime_checkable

from .errors import AnswerNotReadyError, UnknownCorrelationError

logger = logging.getLogger(__name__)


@runtime_checkable
class Signal(Protocol):
    """Carrier for offer/answer blobs, correlated by ID."""

    async def offer(self, offer: bytes) -> int:
        """Post an offer and return the correlation ID for its answer."""
        ...

    async def read_offer(self) -> tuple[int, bytes]:
        """Wait for the next offer and return it with its correlation ID."""
        ...

    async def answer(self, correlation_id: int, answer: bytes) -> None:
        """Post the answer to the offer with the given correlation ID."""
        ...

    async def read_answer(self, correlation_id: int) -> bytes:
        """
        Return the answer for a correlation ID.

        Raises:
            AnswerNotReadyError: If the answer has not been posted yet.
        """
        ...


class DebugSignal:
    """
    In-process signal for tests and single-process demos.

    Offers wait in a bounded queue. Posting blocks while the queue is full,
    which throttles dialers when no listener is reading.

    Each answer is handed out exactly once. After that the correlation ID is
    forgotten.

    An offer whose dialer gives up is never read back. The Dialer calls
    forget() for it, which drops the ID and any answer already posted. An
    answer posted after that is rejected with UnknownCorrelationError.
    """

    def __init__(self, capacity: int, *, seed: int | None = None) -> None:
        """
        Create an in-memory signal.

        Args:
            capacity: Maximum number of offers waiting to be read.
            seed: Seed for correlation ID generation. None seeds from the OS.
        """
        self._offers: asyncio.Queue[tuple[int, bytes]] = asyncio.Queue(maxsize=capacity)
        self._pending: set[int] = set()
        self._answers: dict[int, bytes] = {}
        self._rng = random.Random(seed)

    def _next_id(self) -> int:
        while True:
            correlation_id = self._rng.getrandbits(64)
            if correlation_id not in self._pending and correlation_id not in self._answers:
                return correlation_id

    async def offer(self, offer: bytes) -> int:
        correlation_id = self._next_id()
        self._pending.add(correlation_id)
        try:
            await self._offers.put((correlation_id, offer))
        except BaseException:
            self._pending.discard(correlation_id)
            raise
        logger.debug("Offer %d queued (%d bytes)", correlation_id, len(offer))
        return correlation_id

    async def read_offer(self) -> tuple[int, bytes]:
        return await self._offers.get()

    async def answer(self, correlation_id: int, answer: bytes) -> None:
        if correlation_id not in self._pending:
            raise UnknownCorrelationError(f"no pending offer with correlation ID {correlation_id}")
        self._pending.discard(correlation_id)
        self._answers[correlation_id] = answer
        logger.debug("Answer %d posted (%d bytes)", correlation_id, len(answer))

    async def read_answer(self, correlation_id: int) -> bytes:
        try:
            return self._answers.pop(correlation_id)
        except KeyError:
            raise AnswerNotReadyError(f"answer {correlation_id} not ready") from None

    def forget(self, correlation_id: int) -> None:
        """Drop an abandoned offer and any answer posted for it. Unknown IDs are ignored."""
        self._pending.discard(correlation_id)
        if self._answers.pop(correlation_id, None) is not None:
            logger.debug("Answer %d dropped unread", correlation_id)

    @property
    def outstanding(self) -> int:
        """Offers awaiting an answer plus answers not yet read."""
        return len(self._pending) + len(self._answers)
