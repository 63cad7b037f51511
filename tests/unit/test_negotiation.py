"""
Unit tests for styxauth.negotiation.

Tests the driver (takeover, fallback, delegation chains, WAIT and
timeouts), driver configuration and the identity store.
"""

from typing import Any, ClassVar, List, Mapping, Optional

import attrs
import pytest

from styxauth.core.blob import Blob
from styxauth.core.exceptions import (
    ChannelClosedError,
    CommunicationError,
    ConfigurationError,
    DelegationError,
    InvariantViolation,
    NegotiationTimeout,
    StateError,
)
from styxauth.core.exchange import ExchangeLimits
from styxauth.core.handler import GenericHandler
from styxauth.core.lifecycle import HandlerPhase
from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode
from styxauth.inferno.handler import InfernoHandler
from styxauth.negotiation.config import NegotiationConfig
from styxauth.negotiation.driver import Negotiator
from styxauth.negotiation.identities import IdentityStore
from styxauth.p9any.types import P9anyIdentity
from styxauth.p9sk.types import P9skIdentity
from styxauth.transport.channel import ChannelTransport, MemoryChannel, SocketChannel
from tests.conftest import run_concurrently


# =============================================================================
# TEST HANDLERS
# =============================================================================


@attrs.define
class RecordingTransport:
    """Transport for one-sided tests; nothing ever arrives."""

    sent: List[bytes] = attrs.Factory(list)

    def send(self, data: bytes) -> None:
        self.sent.append(data)

    def receive(self, max_size: int) -> bytes:
        raise CommunicationError("Nothing to receive")


@attrs.define
class FlakyTransport:
    """Wraps a transport; send number ``fail_on`` (from 1) is lost."""

    inner: Any
    fail_on: int
    sends: int = 0

    def send(self, data: bytes) -> None:
        self.sends += 1
        if self.sends == self.fail_on:
            raise ChannelClosedError("Connection reset by peer")
        self.inner.send(data)

    def receive(self, max_size: int) -> bytes:
        return self.inner.receive(max_size)


@attrs.define
class RecordingNegotiator(Negotiator):
    """Negotiator that keeps every handler it creates."""

    created: List[GenericHandler] = attrs.Factory(list)

    def create_handler(self, protocol: str, deadline: Optional[float] = None) -> GenericHandler:
        handler = super().create_handler(protocol, deadline)
        self.created.append(handler)
        return handler


@attrs.define
class _ScriptedHandler(GenericHandler):
    """Client-side handler producing a fixed outcome script."""

    def _can_run_unbound(self) -> bool:
        return True

    def _identity_from_config(self, attributes: Mapping[str, str]) -> Identity:
        raise ConfigurationError("not configurable")

    def _frame_length(self, buffer: bytes) -> Optional[int]:
        return len(buffer) or None

    def _handle_message(self, frame: bytes) -> Outcome:
        return self._fail("unexpected message")


@attrs.define
class _Relay(_ScriptedHandler):
    SUCCESSOR: ClassVar[str] = ""

    def _next_message(self):
        return b"", self._delegate(self.SUCCESSOR)


@attrs.define
class PingHandler(_Relay):
    PROTOCOL_NAME: ClassVar[str] = "ping"
    SUCCESSOR: ClassVar[str] = "pong"


@attrs.define
class PongHandler(_Relay):
    PROTOCOL_NAME: ClassVar[str] = "pong"
    SUCCESSOR: ClassVar[str] = "ping"


@attrs.define
class GhostRelay(_Relay):
    PROTOCOL_NAME: ClassVar[str] = "ghostrelay"
    SUCCESSOR: ClassVar[str] = "ghost"


@attrs.define
class MirrorHandler(_Relay):
    PROTOCOL_NAME: ClassVar[str] = "mirror"
    SUCCESSOR: ClassVar[str] = "mirror"


@attrs.define
class NapHandler(_ScriptedHandler):
    """Asks for a 3 second pause, then succeeds."""

    PROTOCOL_NAME: ClassVar[str] = "nap"

    _napped: bool = attrs.field(default=False, init=False)

    def _next_message(self):
        if not self._napped:
            self._napped = True
            return b"nap", Outcome.wait(3)
        return b"", self._succeed(Credential(user="sleeper", auth_protocol="nap"))


@attrs.define
class SlowStartHandler(NapHandler):
    """Spends 1.5 seconds refusing the channel, then naps over blobs."""

    PROTOCOL_NAME: ClassVar[str] = "slowstart"

    def _takeover(self, channel):
        self.clock.sleep(1.5)
        return super()._takeover(channel)


@attrs.define
class StallHandler(_ScriptedHandler):
    PROTOCOL_NAME: ClassVar[str] = "stall"

    def _next_message(self):
        return b"", Outcome(ProcessingMode.PENDING_DATA)


@attrs.define
class SettlingInferno(InfernoHandler):
    settle_seconds: int = 5


@pytest.fixture
def test_registry(registry):
    for handler_class in (
        PingHandler,
        PongHandler,
        GhostRelay,
        MirrorHandler,
        NapHandler,
        SlowStartHandler,
        StallHandler,
    ):
        registry.register(handler_class.PROTOCOL_NAME, handler_class)
    return registry


@pytest.fixture
def nap_identity():
    return Identity(name="me", auth_protocol="nap")


# =============================================================================
# END-TO-END
# =============================================================================


@pytest.fixture
def client_negotiator(alice):
    store = IdentityStore()
    store.add(alice)
    return Negotiator(identities=store)


@pytest.fixture
def server_negotiator(server_store):
    server_store.add(P9anyIdentity.create(["p9sk2@plan9", "p9sk1@styx"]))
    return Negotiator(identities=server_store)


class TestEndToEnd:
    """Both sides of a negotiation in threads over a channel pair."""

    @pytest.mark.parametrize("factory", [MemoryChannel.pair, SocketChannel.pair])
    def test_p9any_delegates_to_p9sk1(self, factory, client_negotiator, server_negotiator):
        left, right = factory(timeout=5.0)

        client, server = run_concurrently(
            lambda: client_negotiator.negotiate_channel("p9any", left, as_server=False),
            lambda: server_negotiator.negotiate_channel("p9any", right, as_server=True),
        )

        assert client.success and server.success
        assert client.chain == ("p9any", "p9sk1")
        assert server.chain == ("p9any", "p9sk1")
        assert client.protocol == "p9sk1"
        assert server.credential.user == "alice"
        assert client.credential.user == "styx"
        assert client.credential.get_secret() == server.credential.get_secret()

    @pytest.mark.parametrize("blob_size", [16, 64, 8192])
    def test_takeover_fallback_to_blobs(self, blob_size, alice, server_store):
        config = NegotiationConfig(blob_size=blob_size, max_steps=200)
        client_store = IdentityStore()
        client_store.add(alice)
        client_side = Negotiator(identities=client_store, config=config)
        server_side = Negotiator(identities=server_store, config=config)
        left, right = MemoryChannel.pair(timeout=5.0)

        client, server = run_concurrently(
            lambda: client_side.negotiate_channel("p9sk1", left, as_server=False),
            lambda: server_side.negotiate_channel("p9sk1", right, as_server=True),
        )

        assert client.success and server.success
        assert client.chain == ("p9sk1",)
        assert server.identity == alice

    def test_envelope_mode(self, client_negotiator, server_store):
        server_side = Negotiator(identities=server_store)
        left, right = MemoryChannel.pair(timeout=5.0)

        client, server = run_concurrently(
            lambda: client_negotiator.negotiate_channel("p9sk1", left, as_server=False, envelope=True),
            lambda: server_side.negotiate("p9sk1", ChannelTransport(right), as_server=True),
        )

        assert client.success and server.success

    def test_inferno_takeover(self, inferno_client, inferno_server):
        client_store, server_store = IdentityStore(), IdentityStore()
        client_store.add(inferno_client)
        server_store.add(inferno_server)
        left, right = SocketChannel.pair(timeout=5.0)

        client, server = run_concurrently(
            lambda: Negotiator(identities=client_store).negotiate_channel(
                "inferno", left, as_server=False
            ),
            lambda: Negotiator(identities=server_store).negotiate_channel(
                "inferno", right, as_server=True
            ),
        )

        assert client.success and server.success
        assert client.chain == ("inferno",)
        assert client.credential.user == "fileserver"
        assert server.credential.groups == ("styx.example",)

    def test_unknown_user_fails_both_sides(self, client_negotiator):
        server_side = Negotiator(identities=IdentityStore())
        left, right = MemoryChannel.pair(timeout=5.0)

        client, server = run_concurrently(
            lambda: client_negotiator.negotiate_channel("p9sk1", left, as_server=False),
            lambda: server_side.negotiate_channel("p9sk1", right, as_server=True),
        )

        assert client.mode is ProcessingMode.FAILED
        assert server.mode is ProcessingMode.FAILED
        assert server.info == "unknown user 'alice'"
        assert client.info.startswith("peer rejected authentication")
        assert client.credential is None and server.credential is None

    def test_no_common_protocol(self, server_negotiator):
        client_side = Negotiator(identities=IdentityStore())
        left, right = MemoryChannel.pair(timeout=5.0)

        def client_call():
            try:
                return client_side.negotiate_channel("p9any", left, as_server=False)
            finally:
                left.close()

        def server_call():
            try:
                return server_negotiator.negotiate_channel("p9any", right, as_server=True)
            except ChannelClosedError as e:
                return e

        client, server = run_concurrently(client_call, server_call)

        assert client.mode is ProcessingMode.FAILED
        assert client.chain == ("p9any",)
        assert client.info.startswith("no common protocol")
        assert isinstance(server, ChannelClosedError)

    def test_lost_last_message_withdraws_success(self, alice, server_store):
        """Test a client whose Ac never leaves ends ABORTED, not SUCCEEDED."""
        client_store = IdentityStore()
        client_store.add(alice)
        client_side = RecordingNegotiator(identities=client_store)
        server_side = Negotiator(identities=server_store)
        left, right = MemoryChannel.pair(timeout=5.0)
        transport = FlakyTransport(ChannelTransport(left), fail_on=2)

        def client_call():
            try:
                return client_side.negotiate("p9sk1", transport, as_server=False)
            except ChannelClosedError as e:
                return e
            finally:
                left.close()

        def server_call():
            try:
                return server_side.negotiate("p9sk1", ChannelTransport(right), as_server=True)
            except ChannelClosedError as e:
                return e

        client, server = run_concurrently(client_call, server_call)

        assert isinstance(client, ChannelClosedError)
        assert isinstance(server, ChannelClosedError)
        handler = client_side.created[0]
        assert handler.phase is HandlerPhase.ABORTED
        assert handler.peer_credential is None
        assert handler.info == "Connection reset by peer"
        with pytest.raises(StateError):
            handler.get_data_for_peer(Blob(64))

    def test_takeover_honors_driver_timeout(
        self, registry, fake_clock, inferno_client, inferno_server
    ):
        """Test a settling inferno server times out instead of sleeping past the deadline."""
        registry.register("inferno", SettlingInferno, replace=True)
        client_store, server_store = IdentityStore(), IdentityStore()
        client_store.add(inferno_client)
        server_store.add(inferno_server)
        server_side = Negotiator(
            registry=registry,
            identities=server_store,
            clock=fake_clock,
            config=NegotiationConfig(timeout_seconds=2),
        )
        left, right = MemoryChannel.pair(timeout=5.0)

        def client_call():
            try:
                return Negotiator(identities=client_store).negotiate_channel(
                    "inferno", left, as_server=False
                )
            except ChannelClosedError as e:
                return e

        def server_call():
            try:
                return server_side.negotiate_channel("inferno", right, as_server=True)
            except NegotiationTimeout as e:
                return e
            finally:
                right.close()

        client, server = run_concurrently(client_call, server_call)

        assert isinstance(server, NegotiationTimeout)
        assert isinstance(client, ChannelClosedError)
        assert fake_clock.sleeps == []


# =============================================================================
# DRIVER RULES
# =============================================================================


class TestDriverRules:
    def test_delegation_cycle(self, test_registry):
        negotiator = Negotiator(registry=test_registry)
        with pytest.raises(DelegationError, match="ping -> pong -> ping"):
            negotiator.negotiate("ping", RecordingTransport(), as_server=False)

    def test_unregistered_successor(self, test_registry):
        negotiator = Negotiator(registry=test_registry)
        with pytest.raises(DelegationError, match="unregistered protocol 'ghost'"):
            negotiator.negotiate("ghostrelay", RecordingTransport(), as_server=False)

    def test_delegation_limit(self, test_registry):
        negotiator = Negotiator(
            registry=test_registry, config=NegotiationConfig(max_delegations=0)
        )
        with pytest.raises(DelegationError, match="exceeds 0"):
            negotiator.negotiate("ping", RecordingTransport(), as_server=False)

    def test_self_delegation(self, test_registry):
        negotiator = Negotiator(registry=test_registry)
        with pytest.raises(InvariantViolation):
            negotiator.negotiate("mirror", RecordingTransport(), as_server=False)

    def test_unknown_protocol(self, registry):
        with pytest.raises(ConfigurationError):
            Negotiator(registry=registry).negotiate("nope", RecordingTransport(), as_server=False)

    def test_wait_is_honored(self, test_registry, fake_clock, nap_identity):
        transport = RecordingTransport()
        negotiator = Negotiator(registry=test_registry, clock=fake_clock)

        result = negotiator.negotiate("nap", transport, as_server=False, identity=nap_identity)

        assert result.success
        assert result.credential.user == "sleeper"
        assert fake_clock.sleeps == [3]
        assert transport.sent == [b"nap"]

    def test_deadline_checked_before_waiting(self, test_registry, fake_clock, nap_identity):
        negotiator = Negotiator(
            registry=test_registry,
            clock=fake_clock,
            config=NegotiationConfig(timeout_seconds=2),
        )
        with pytest.raises(NegotiationTimeout):
            negotiator.negotiate("nap", RecordingTransport(), as_server=False, identity=nap_identity)
        assert fake_clock.sleeps == []

    def test_fallback_keeps_deadline(self, test_registry, fake_clock):
        """Test the blob fallback does not restart the timeout."""
        negotiator = Negotiator(
            registry=test_registry,
            clock=fake_clock,
            config=NegotiationConfig(timeout_seconds=4),
        )
        channel, _ = MemoryChannel.pair()
        identity = Identity(name="me", auth_protocol="slowstart")

        # 1.5s refusing takeover plus a 3s nap overruns 4s
        with pytest.raises(NegotiationTimeout):
            negotiator.negotiate_channel("slowstart", channel, as_server=False, identity=identity)
        assert fake_clock.sleeps == [1.5]

    def test_step_budget(self, test_registry):
        negotiator = Negotiator(registry=test_registry, config=NegotiationConfig(max_steps=3))
        with pytest.raises(CommunicationError, match="within 3 steps"):
            negotiator.negotiate("stall", RecordingTransport(), as_server=False)

    def test_transport_failure_propagates(self, alice, server_store):
        negotiator = Negotiator(identities=server_store)
        with pytest.raises(CommunicationError, match="Nothing to receive"):
            negotiator.negotiate("p9sk1", RecordingTransport(), as_server=True)

    def test_create_handler_shares_store_and_clock(self, fake_clock):
        store = IdentityStore()
        negotiator = Negotiator(identities=store, clock=fake_clock)
        handler = negotiator.create_handler("p9sk1")
        assert handler.identities is store
        assert handler.clock is fake_clock

    def test_create_handler_applies_limits(self):
        negotiator = Negotiator(config=NegotiationConfig(blob_size=512, max_steps=10))
        handler = negotiator.create_handler("inferno", deadline=1234.0)
        assert handler.limits == ExchangeLimits(blob_size=512, max_steps=10, deadline=1234.0)


# =============================================================================
# HANDLER CONTRACT
# =============================================================================


class TestHandlerContract:
    """Rules every built-in handler follows."""

    @pytest.fixture(params=["p9any", "p9sk1", "p9sk2", "inferno"])
    def handler(self, request, registry):
        return registry.create(request.param)

    def test_uninitialized_has_no_identity(self, handler):
        outcome = handler.get_data_for_peer(Blob(64))
        assert outcome.mode is ProcessingMode.NO_IDENTITY
        assert handler.peer_credential is None

    def test_client_without_identity(self, handler):
        assert not handler.init(None, as_server=False)
        assert handler.info
        assert handler.get_data_for_peer(Blob(64)).mode is ProcessingMode.NO_IDENTITY

    def test_single_initialization(self, handler):
        handler.init(None, as_server=False)
        with pytest.raises(StateError):
            handler.init(None, as_server=False)
        with pytest.raises(StateError):
            handler.init_from_config({"role": "server"})

    def test_declarative_without_attributes(self, handler):
        assert not handler.init_from_config({})
        assert handler.info


# =============================================================================
# CONFIGURATION
# =============================================================================


class TestNegotiationConfig:
    def test_defaults(self):
        config = NegotiationConfig()
        assert config.blob_size == 8192
        assert config.max_steps == 64
        assert config.max_delegations == 4
        assert config.timeout_seconds is None

    def test_from_mapping(self):
        config = NegotiationConfig.from_mapping(
            {"blob_size": "512", "timeout_seconds": "2.5", "colour": "blue"}
        )
        assert config.blob_size == 512
        assert config.timeout_seconds == 2.5
        assert config.max_steps == 64

    def test_empty_timeout_means_none(self):
        assert NegotiationConfig.from_mapping({"timeout_seconds": ""}).timeout_seconds is None

    @pytest.mark.parametrize(
        "values",
        [
            {"blob_size": "8"},
            {"max_steps": "lots"},
            {"max_delegations": "-1"},
            {"timeout_seconds": "0"},
        ],
    )
    def test_invalid_values(self, values):
        with pytest.raises(ConfigurationError):
            NegotiationConfig.from_mapping(values)

    def test_direct_validation(self):
        with pytest.raises(ValueError):
            NegotiationConfig(timeout_seconds=-1)


# =============================================================================
# IDENTITY STORE
# =============================================================================


class TestIdentityStore:
    def test_find_by_domain(self, alice):
        store = IdentityStore()
        store.add(alice)
        assert store.find("p9sk1", "styx") == alice
        assert store.find("p9sk1") == alice
        assert store.find("p9sk1", "plan9") is None
        assert store.find("p9sk2") is None

    def test_domainless_identity_matches_any_domain(self):
        store = IdentityStore()
        bootes = P9skIdentity.create("bootes", "secret")
        store.add(bootes)
        assert store.find("p9sk1", "plan9") == bootes

    def test_identities_lists_own_entries(self, alice):
        store = IdentityStore()
        bootes = P9skIdentity.create("bootes", "secret", domain="plan9")
        store.add(alice)
        store.add(bootes)
        store.add_key(P9skIdentity.create("carol", "key"))

        listed = store.identities()

        assert listed == [alice, bootes]
        listed.clear()
        assert len(store.identities()) == 2

    def test_keyring_fallback(self):
        store = IdentityStore()
        bob = P9skIdentity.create("bob", "builder")
        store.add_key(bob)
        assert store.find_key("p9sk1", "bob", "anywhere") == bob
        assert store.find_key("p9sk1", "carol") is None
        assert len(store) == 1

    def test_load_records(self, registry):
        store = IdentityStore()
        count = store.load_records(
            [
                {"proto": "p9sk1", "user": "bootes", "password": "secret", "domain": "plan9"},
                {
                    "proto": "p9sk1",
                    "scope": "keyring",
                    "user": "alice",
                    "password": "wonderland",
                    "domain": "styx",
                },
                {"proto": "p9any", "domains": "p9sk1@plan9"},
            ],
            registry,
        )

        assert count == 3
        assert store.find("p9sk1", "plan9").name == "bootes"
        assert store.find_key("p9sk1", "alice", "styx").password == "wonderland"
        assert store.find("p9any").domains == ("p9sk1@plan9",)

    @pytest.mark.parametrize(
        "record,message",
        [
            ({"user": "bootes"}, "missing 'proto'"),
            ({"proto": "p9sk1", "scope": "global"}, "unknown scope"),
            ({"proto": "p9sk1", "user": "bootes"}, "Missing required attribute 'password'"),
            ({"proto": "inferno", "user": "bootes"}, "issue_identity"),
            ({"proto": "kerberos"}, "Unknown authentication protocol"),
        ],
    )
    def test_load_records_errors(self, registry, record, message):
        with pytest.raises(ConfigurationError, match=message):
            IdentityStore().load_records([record], registry)
