"""Tests for the Listener lifecycle and accept loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import pytest

from rtconn import Config, DebugSignal, Dialer, Listener
from rtconn.errors import ListenerClosedError, ListenerStateError
from rtconn.listener import ListenerStatus
from tests.rtconn.helpers import LoopbackEngine


class FlakySignal(DebugSignal):
    """DebugSignal whose first read_offer calls fail."""

    def __init__(self, failures: int) -> None:
        super().__init__(8)
        self.failures = failures

    async def read_offer(self) -> tuple[int, bytes]:
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("signal server hiccup")
        return await super().read_offer()


class TestStatus:
    """Tests for the status machine."""

    @pytest.mark.asyncio
    async def test_full_cycle(self, make_config: Callable[..., Config]) -> None:
        """NEW -> RUNNING -> SUSPENDED -> RUNNING -> STOPPED -> RUNNING -> STOPPED."""
        listener = make_config().new_listener()
        assert listener.status is ListenerStatus.NEW

        listener.start()
        assert listener.status is ListenerStatus.RUNNING
        listener.suspend()
        assert listener.status is ListenerStatus.SUSPENDED
        listener.start()
        assert listener.status is ListenerStatus.RUNNING
        await listener.stop()
        assert listener.status is ListenerStatus.STOPPED
        listener.start()
        assert listener.status is ListenerStatus.RUNNING
        await listener.close()
        assert listener.status is ListenerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, listener: Listener) -> None:
        """Starting a running listener raises ListenerStateError."""
        with pytest.raises(ListenerStateError):
            listener.start()
        assert listener.status is ListenerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_suspend_requires_running(self, make_config: Callable[..., Config]) -> None:
        """Only a running listener can be suspended."""
        listener = make_config().new_listener()

        with pytest.raises(ListenerStateError):
            listener.suspend()
        assert listener.status is ListenerStatus.NEW

    @pytest.mark.asyncio
    async def test_stop_requires_started(self, make_config: Callable[..., Config]) -> None:
        """A listener that never started cannot be stopped."""
        listener = make_config().new_listener()

        with pytest.raises(ListenerStateError):
            await listener.stop()

    @pytest.mark.asyncio
    async def test_stop_twice_rejected(self, listener: Listener) -> None:
        """A stopped listener cannot be stopped again."""
        await listener.stop()

        with pytest.raises(ListenerStateError):
            await listener.stop()


class TestAccept:
    """Tests for accept() and the accept queue."""

    @pytest.mark.asyncio
    async def test_accept_after_stop_fails(self, listener: Listener) -> None:
        """accept() on a stopped listener raises ListenerClosedError."""
        await listener.stop()

        with pytest.raises(ListenerClosedError):
            await listener.accept()

    @pytest.mark.asyncio
    async def test_stop_wakes_blocked_accept(self, listener: Listener) -> None:
        """A blocked accept() fails with ListenerClosedError when the listener stops."""
        waiting = asyncio.create_task(listener.accept())
        await asyncio.sleep(0.01)

        await listener.stop()

        with pytest.raises(ListenerClosedError):
            await asyncio.wait_for(waiting, 1.0)

    @pytest.mark.asyncio
    async def test_one_session_per_offer(
        self, dialer: Dialer, listener: Listener, engine: LoopbackEngine
    ) -> None:
        """Each offer is answered on its own session."""
        for label in ("HELLO1", "HELLO2", "HELLO3"):
            await dialer.dial(label, timeout=2.0)
            await asyncio.wait_for(listener.accept(), 2.0)

        assert len(engine.answered) == 3
        assert listener.session_count == 3

    @pytest.mark.asyncio
    async def test_backlog_applies_backpressure(
        self, make_config: Callable[..., Config], engine: LoopbackEngine
    ) -> None:
        """Only accept_backlog streams wait in the queue. The rest wait to be queued."""
        async with (
            make_config(accept_backlog=1).new_listener() as listener,
            make_config(reuse_session=True).new_dialer() as dialer,
        ):
            for label in ("BYE1", "BYE2", "BYE3"):
                await dialer.dial(label, timeout=2.0)
            await asyncio.sleep(0.01)
            assert listener._accepted.qsize() == 1

            labels = [(await asyncio.wait_for(listener.accept(), 1.0)).label for _ in range(3)]

        assert sorted(labels) == ["BYE1", "BYE2", "BYE3"]

    @pytest.mark.asyncio
    async def test_stop_closes_sessions_and_conns(
        self, dialer: Dialer, listener: Listener
    ) -> None:
        """Stopping closes every answered session. The dialer sees end of stream."""
        conn = await dialer.dial("Hi", timeout=2.0)
        accepted = await asyncio.wait_for(listener.accept(), 2.0)

        await listener.stop()
        await asyncio.sleep(0.01)

        assert listener.session_count == 0
        assert accepted.closed
        assert await asyncio.wait_for(conn.read(), 1.0) == b""

    @pytest.mark.asyncio
    async def test_stop_closes_unaccepted_conns(
        self, dialer: Dialer, listener: Listener
    ) -> None:
        """Streams still waiting in the accept queue are closed on stop."""
        conn = await dialer.dial("never accepted", timeout=2.0)
        await asyncio.sleep(0.01)

        await listener.stop()

        assert await asyncio.wait_for(conn.read(), 1.0) == b""


class TestAcceptLoop:
    """Tests for reading and answering offers."""

    @pytest.mark.asyncio
    async def test_suspended_listener_holds_offers(
        self, make_config: Callable[..., Config], dialer: Dialer, engine: LoopbackEngine
    ) -> None:
        """Offers wait while suspended and are answered after resuming."""
        listener = make_config().new_listener()
        listener.start()
        listener.suspend()

        dialing = asyncio.create_task(dialer.dial("later", timeout=2.0))
        await asyncio.sleep(0.1)
        assert not dialing.done()
        assert engine.answered == []

        listener.start()
        conn = await dialing
        accepted = await asyncio.wait_for(listener.accept(), 1.0)
        assert accepted.label == conn.label
        await listener.stop()

    @pytest.mark.asyncio
    async def test_read_errors_are_retried(
        self, make_config: Callable[..., Config], caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing read_offer is logged and the loop keeps going."""
        signal = FlakySignal(failures=3)
        config = make_config(signal=signal)

        with caplog.at_level(logging.WARNING, logger="rtconn.listener"):
            async with config.new_listener() as listener, config.new_dialer() as dialer:
                conn = await dialer.dial("retry", timeout=2.0)
                accepted = await asyncio.wait_for(listener.accept(), 2.0)

        assert accepted.label == conn.label
        assert signal.failures == 0
        assert caplog.text.count("Reading offer failed") == 3

    @pytest.mark.asyncio
    async def test_failed_negotiation_does_not_stop_loop(
        self,
        dialer: Dialer,
        listener: Listener,
        engine: LoopbackEngine,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """An offer that cannot be answered is dropped and the next one succeeds."""
        engine.fail_create_answer = True
        with caplog.at_level(logging.WARNING, logger="rtconn.listener"):
            with pytest.raises(TimeoutError):
                await dialer.dial("doomed", timeout=0.2)

        assert "answer-create" in caplog.text
        assert listener.session_count == 0

        engine.fail_create_answer = False
        conn = await dialer.dial("fine", timeout=2.0)
        accepted = await asyncio.wait_for(listener.accept(), 2.0)
        assert accepted.label == conn.label

    @pytest.mark.asyncio
    async def test_bad_offer_is_dropped(
        self, listener: Listener, signal: DebugSignal, caplog: pytest.LogCaptureFixture
    ) -> None:
        """An undecodable offer is logged and never answered."""
        with caplog.at_level(logging.WARNING, logger="rtconn.listener"):
            correlation_id = await signal.offer(b"definitely not json")
            await asyncio.sleep(0.05)

        assert "offer-receive" in caplog.text
        assert correlation_id in signal._pending
        assert listener.session_count == 0

    @pytest.mark.asyncio
    async def test_dialer_close_removes_listener_session(
        self, dialer: Dialer, listener: Listener
    ) -> None:
        """When the dialing side goes away, the answered session is dropped."""
        await dialer.dial("gone", timeout=2.0)
        await asyncio.wait_for(listener.accept(), 2.0)
        assert listener.session_count == 1

        await dialer.close()
        await asyncio.sleep(0.01)

        assert listener.session_count == 0


class TestManualAnswer:
    """Tests for answering offers by hand."""

    @pytest.mark.asyncio
    async def test_answer_on_stopped_listener_fails(self, listener: Listener) -> None:
        """answer() on a stopped listener raises ListenerClosedError."""
        await listener.stop()

        with pytest.raises(ListenerClosedError):
            await listener.answer(b"{}")

    @pytest.mark.asyncio
    async def test_zero_timeout_fails_without_negotiating(
        self, listener: Listener, engine: LoopbackEngine
    ) -> None:
        """A zero timeout raises TimeoutError before any session is created."""
        with pytest.raises(TimeoutError):
            await listener.answer(b"{}", timeout=0)

        assert engine.answered == []

    @pytest.mark.asyncio
    async def test_listener_has_no_single_address(self, listener: Listener) -> None:
        """Each answered session picks its own path, so the listener reports none."""
        assert listener.addr is None


class TestIdleEviction:
    """Tests for closing answered sessions with no streams."""

    @pytest.mark.asyncio
    async def test_idle_session_evicted(self, make_config: Callable[..., Config]) -> None:
        """Once both sides close their streams, the answered session is evicted."""
        config = make_config(idle_timeout=0.05)
        async with config.new_listener() as listener, config.new_dialer() as dialer:
            conn = await dialer.dial("brief", timeout=2.0)
            accepted = await asyncio.wait_for(listener.accept(), 2.0)

            await accepted.close()
            await conn.close()
            await asyncio.sleep(0.3)

            assert listener.session_count == 0
