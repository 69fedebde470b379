"""Tests for Config and the engine settings it forwards."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from pydantic import ValidationError

from rtconn import Config, DebugSignal, Dialer, Listener
from rtconn.config import DEFAULT_ACCEPT_BACKLOG, DEFAULT_IDLE_TIMEOUT
from rtconn.conn import DEFAULT_MAX_MESSAGE_SIZE
from rtconn.engine.settings import (
    CandidateType,
    DTLSRole,
    EngineSettings,
    IceServer,
    NAT1To1IPs,
    NetworkType,
    PortRange,
)
from tests.rtconn.helpers import LoopbackEngine


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self) -> None:
        """An empty Config selects manual signaling and the default engine."""
        config = Config()

        assert config.signal is None
        assert config.engine is None
        assert config.reuse_session is False
        assert config.idle_timeout == DEFAULT_IDLE_TIMEOUT
        assert config.accept_backlog == DEFAULT_ACCEPT_BACKLOG
        assert config.max_message_size == DEFAULT_MAX_MESSAGE_SIZE
        assert config.mtu is None

    def test_default_engine_settings_are_empty(self) -> None:
        """Without pass-through fields the engine gets default settings."""
        assert Config().engine_settings() == EngineSettings()


class TestValidation:
    """Tests for rejected configurations."""

    def test_unknown_field_rejected(self) -> None:
        """Typos in field names fail loudly."""
        with pytest.raises(ValidationError):
            Config(idle_timout=5.0)  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        """Configs cannot be changed after construction."""
        config = Config()

        with pytest.raises(ValidationError):
            config.reuse_session = True  # type: ignore[misc]

    def test_no_coercion(self) -> None:
        """Values of the wrong type are not coerced."""
        with pytest.raises(ValidationError):
            Config(reuse_session="yes")  # type: ignore[arg-type]

    def test_signal_must_implement_protocol(self) -> None:
        """An object without the signal methods is rejected."""
        with pytest.raises(ValidationError):
            Config(signal=object())  # type: ignore[arg-type]

    def test_signal_accepted(self) -> None:
        """A DebugSignal satisfies the signal protocol."""
        signal = DebugSignal(1)

        assert Config(signal=signal).signal is signal

    @pytest.mark.parametrize("field", ["idle_timeout", "negotiation_timeout", "poll_interval"])
    def test_non_positive_durations_rejected(self, field: str) -> None:
        """Durations must be positive."""
        with pytest.raises(ValidationError):
            Config(**{field: 0.0})

    def test_idle_timeout_can_be_disabled(self) -> None:
        """None turns idle closing off."""
        assert Config(idle_timeout=None).idle_timeout is None

    def test_mtu_caps_message_size(self) -> None:
        """With framing on, messages must fit the 16-bit length prefix."""
        with pytest.raises(ValidationError):
            Config(mtu=1200, max_message_size=70000)

        assert Config(mtu=1200, max_message_size=65535).mtu == 1200

    def test_large_messages_allowed_without_framing(self) -> None:
        """Without an MTU the message size is up to the engine."""
        assert Config(max_message_size=262144).max_message_size == 262144

    def test_zero_mtu_rejected(self) -> None:
        """An MTU must be positive."""
        with pytest.raises(ValidationError):
            Config(mtu=0)


class TestEngineSettings:
    """Tests for the pass-through settings."""

    def test_inverted_port_range_rejected(self) -> None:
        """min above max is an error."""
        with pytest.raises(ValidationError):
            PortRange(min=6000, max=5000)

    @pytest.mark.parametrize(("low", "high"), [(0, 100), (100, 65536)])
    def test_port_bounds(self, low: int, high: int) -> None:
        """Ports must lie in 1..65535."""
        with pytest.raises(ValidationError):
            PortRange(min=low, max=high)

    def test_single_port_range(self) -> None:
        """A range may hold a single port."""
        assert PortRange(min=5000, max=5000).max == 5000

    @pytest.mark.parametrize(
        ("candidate_type", "valid"),
        [
            (CandidateType.HOST, True),
            (CandidateType.SRFLX, True),
            (CandidateType.PRFLX, False),
            (CandidateType.RELAY, False),
        ],
    )
    def test_nat_candidate_types(self, candidate_type: CandidateType, valid: bool) -> None:
        """1:1 NAT IPs only map onto host or srflx candidates."""
        if valid:
            assert NAT1To1IPs(ips=("203.0.113.7",), candidate_type=candidate_type)
        else:
            with pytest.raises(ValidationError):
                NAT1To1IPs(ips=("203.0.113.7",), candidate_type=candidate_type)

    def test_engine_settings_collects_fields(self) -> None:
        """engine_settings() carries every pass-through field."""

        def only_eth(name: str) -> bool:
            return name.startswith("eth")

        config = Config(
            network_types=(NetworkType.UDP4,),
            interface_filter=only_eth,
            nat_1to1_ips=NAT1To1IPs(ips=("203.0.113.7",)),
            port_range=PortRange(min=50000, max=50100),
            answering_dtls_role=DTLSRole.SERVER,
            ice_servers=(IceServer(urls=("stun:stun.example.org:3478",)),),
            certificates=("cert",),
        )

        settings = config.engine_settings()

        assert settings.network_types == (NetworkType.UDP4,)
        assert settings.interface_filter is only_eth
        assert settings.nat_1to1_ips == NAT1To1IPs(ips=("203.0.113.7",))
        assert settings.port_range == PortRange(min=50000, max=50100)
        assert settings.answering_dtls_role is DTLSRole.SERVER
        assert settings.ice_servers[0].urls == ("stun:stun.example.org:3478",)
        assert settings.certificates == ("cert",)

    @pytest.mark.asyncio
    async def test_settings_reach_every_session(
        self, make_config: Callable[..., Config], engine: LoopbackEngine
    ) -> None:
        """Dialed and answered sessions both get the configured settings."""
        config = make_config(port_range=PortRange(min=50000, max=50100))

        async with config.new_listener() as listener, config.new_dialer() as dialer:
            await dialer.dial("settings", timeout=2.0)
            await asyncio.wait_for(listener.accept(), 2.0)

        assert len(engine.settings) == 2
        assert all(s == config.engine_settings() for s in engine.settings)


class TestFactories:
    """Tests for building endpoints from a Config."""

    @pytest.mark.asyncio
    async def test_new_dialer(self, make_config: Callable[..., Config]) -> None:
        """new_dialer() builds a Dialer with no sessions."""
        dialer = make_config().new_dialer()

        assert isinstance(dialer, Dialer)
        assert dialer.session_count == 0
        await dialer.close()

    @pytest.mark.asyncio
    async def test_new_listener_not_started(self, make_config: Callable[..., Config]) -> None:
        """new_listener() builds a Listener that still has to be started."""
        listener = make_config().new_listener()

        assert isinstance(listener, Listener)
        assert listener.status.name == "NEW"

    def test_configured_engine_used(self, engine: LoopbackEngine) -> None:
        """resolve_engine() returns the configured engine as is."""
        assert Config(engine=engine).resolve_engine() is engine
