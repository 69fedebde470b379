"""
Exception taxonomy for rtconn.

Every error raised by the package derives from TransportError, so callers
can catch the whole family at once. A few errors also derive from the
builtin they refine (TimeoutError, ValueError) so generic handlers keep
working.

Cancellation is never wrapped: asyncio.CancelledError and the TimeoutError
raised by an expired `asyncio.timeout()` propagate unchanged.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum


class TransportError(Exception):
    """Base class for all rtconn errors."""


class NegotiationPhase(StrEnum):
    """Step of offer/answer negotiation at which a failure happened."""

    SESSION_SETUP = "session-setup"
    """Creating the engine session or its first data channel."""

    OFFER_CREATE = "offer-create"
    """Generating the local offer and gathering candidates."""

    OFFER_SEND = "offer-send"
    """Handing the offer to the signal."""

    OFFER_RECEIVE = "offer-receive"
    """Decoding or applying a remote offer."""

    ANSWER_CREATE = "answer-create"
    """Generating the local answer and gathering candidates."""

    ANSWER_SEND = "answer-send"
    """Handing the answer to the signal."""

    ANSWER_RECEIVE = "answer-receive"
    """Reading, decoding or applying the remote answer."""


class SignalingError(TransportError):
    """Offer/answer negotiation failed at a specific phase."""

    def __init__(self, phase: NegotiationPhase, message: str) -> None:
        super().__init__(f"{phase}: {message}")
        self.phase = phase


class AnswerNotReadyError(TransportError):
    """The signal has no answer for the correlation ID yet. Poll again."""


class UnknownCorrelationError(TransportError, LookupError):
    """The signal holds no pending offer under the given correlation ID."""


class SessionUnavailableError(TransportError):
    """The session cannot carry new streams (closed, failed or evicted)."""


class StreamClosedError(TransportError, ConnectionError):
    """The stream is closed locally or was closed by the peer."""


class PayloadTooLargeError(TransportError, ValueError):
    """A single write exceeds the maximum message size. Nothing was sent."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class DeadlineExceededError(TransportError, TimeoutError):
    """A read or write deadline passed before the operation finished."""


class DeadlineInPastError(TransportError, ValueError):
    """A deadline was set to a time that has already passed."""


class ShortBufferError(TransportError):
    """
    The next message is larger than the caller's buffer.

    The buffer was filled with the first `n` bytes of the message and the
    rest of the message was discarded.
    """

    def __init__(self, n: int, data: bytes) -> None:
        super().__init__(f"short buffer: message truncated to {n} bytes")
        self.n = n
        self.data = data


class ListenerClosedError(TransportError):
    """The listener is stopped and accepts no more connections."""


class ListenerStateError(TransportError):
    """A lifecycle call was made from a status that does not allow it."""


@contextmanager
def signaling_phase(phase: NegotiationPhase) -> Iterator[None]:
    """Tag any failure raised inside the block with the negotiation phase."""
    try:
        yield
    except SignalingError:
        raise
    except Exception as e:
        raise SignalingError(phase, str(e) or type(e).__name__) from e
