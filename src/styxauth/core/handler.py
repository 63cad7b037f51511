"""
styxauth Protocol Handler Contract

AuthProtocolHandler is the capability set every authentication protocol
implements; GenericHandler is the base class the built-in handlers derive
from. It owns the rules shared by all protocols:

- exactly one initialization (live handshake or declarative)
- NO_IDENTITY when no usable identity is bound
- channel takeover and blob exchange never mixed on one instance
- outbound chunking / inbound reassembly across blobs
- credential published only on the transition into SUCCESS
- communication faults abort the handler and propagate

Subclasses implement the protocol itself through four hooks:
``_identity_from_config``, ``_next_message``, ``_frame_length`` and
``_handle_message`` (plus ``_takeover`` if they can drive a channel).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Optional, Tuple, Type, TypeVar

import attrs
import structlog
from returns.result import Failure

from styxauth.core.blob import Blob
from styxauth.core.exceptions import (
    CommunicationError,
    ConfigurationError,
    InvariantViolation,
    StateError,
)
from styxauth.core.exchange import Clock, ExchangeLimits, SystemClock
from styxauth.core.lifecycle import (
    Aborted,
    Delegated,
    ExchangePath,
    Failed,
    HandlerLifecycle,
    HandlerPhase,
    Initialized,
    NoIdentity,
    NotSupported,
    Step,
    Succeeded,
)
from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode, Role

if TYPE_CHECKING:
    from styxauth.negotiation.identities import IdentityStore
    from styxauth.transport.channel import Channel

logger = structlog.get_logger()

T = TypeVar("T")


# =============================================================================
# CONTRACT
# =============================================================================


class AuthProtocolHandler(ABC):
    """
    One authentication attempt for one named protocol.

    A handler is created per negotiation attempt, initialized exactly once,
    then driven through ``process()`` (channel takeover) or through
    ``get_data_for_peer()`` / ``handle_peer_data()`` (blob exchange) until
    it reports a terminal or DELEGATED outcome.
    """

    PROTOCOL_NAME: ClassVar[str] = ""

    @property
    def protocol_name(self) -> str:
        """Stable registry name of the handled protocol."""
        return type(self).PROTOCOL_NAME

    @abstractmethod
    def init(self, identity: Optional[Identity], as_server: bool) -> bool:
        """Prepare a live handshake with ``identity`` in the given role."""
        ...

    @abstractmethod
    def init_from_config(self, attributes: Mapping[str, str]) -> bool:
        """Build the identity from configuration attributes."""
        ...

    @property
    @abstractmethod
    def identity(self) -> Optional[Identity]:
        ...

    @property
    @abstractmethod
    def peer_credential(self) -> Optional[Credential]:
        """Credential of the peer; only set after SUCCESS."""
        ...

    @property
    @abstractmethod
    def info(self) -> str:
        """Failure reason after FAILED, successor protocol after DELEGATED."""
        ...

    @property
    @abstractmethod
    def is_server(self) -> bool:
        ...

    @property
    def initiates(self) -> bool:
        """True if this side produces the first handshake message."""
        return not self.is_server

    @property
    def delegation_domain(self) -> str:
        """Auth domain selected for a DELEGATED hand-off."""
        return ""

    @abstractmethod
    def process(self, channel: Channel) -> Outcome:
        """Take over ``channel`` and run the whole handshake on it."""
        ...

    @abstractmethod
    def get_data_for_peer(self, blob: Blob) -> Outcome:
        """Fill ``blob`` with the next outbound handshake data."""
        ...

    @abstractmethod
    def handle_peer_data(self, blob: Blob) -> Outcome:
        """Process handshake data received from the peer."""
        ...


def require_attribute(attributes: Mapping[str, str], key: str) -> str:
    """Return a non-blank configuration attribute or raise ConfigurationError."""
    value = attributes.get(key)
    if value is None or not str(value).strip():
        raise ConfigurationError(f"Missing required attribute '{key}'")
    return str(value).strip()


# =============================================================================
# GENERIC HANDLER
# =============================================================================


@attrs.define
class GenericHandler(AuthProtocolHandler):
    """
    Base class for protocol handlers.

    Attributes:
        identities: Store used to resolve identities and peer secrets
        clock: Time source (expiry checks, takeover waits)
        limits: Blob size, step budget and deadline while holding a channel
    """

    IDENTITY_TYPE: ClassVar[Type[Identity]] = Identity

    identities: Optional[IdentityStore] = None
    clock: Clock = attrs.Factory(SystemClock)
    limits: ExchangeLimits = attrs.Factory(ExchangeLimits)

    _identity: Optional[Identity] = attrs.field(default=None, init=False)
    _role: Role = attrs.field(default=Role.CLIENT, init=False)
    _info: str = attrs.field(default="", init=False)
    _credential: Optional[Credential] = attrs.field(default=None, init=False, repr=False)
    _pending_credential: Optional[Credential] = attrs.field(default=None, init=False, repr=False)
    _path: Optional[ExchangePath] = attrs.field(default=None, init=False)
    _final: Optional[Outcome] = attrs.field(default=None, init=False)
    _outbound: bytearray = attrs.field(factory=bytearray, init=False, repr=False)
    _after_flush: Optional[Outcome] = attrs.field(default=None, init=False, repr=False)
    _inbound: bytearray = attrs.field(factory=bytearray, init=False, repr=False)
    _lifecycle: HandlerLifecycle = attrs.field(init=False, repr=False)
    _logger: Any = attrs.field(init=False, repr=False)

    def __attrs_post_init__(self) -> None:
        self._lifecycle = HandlerLifecycle.create(self.protocol_name)
        self._logger = structlog.get_logger().bind(protocol=self.protocol_name)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def peer_credential(self) -> Optional[Credential]:
        if self._lifecycle.state is HandlerPhase.SUCCEEDED:
            return self._credential
        return None

    @property
    def info(self) -> str:
        return self._info

    @property
    def is_server(self) -> bool:
        return self._role is Role.SERVER

    @property
    def role(self) -> Role:
        return self._role

    @property
    def phase(self) -> HandlerPhase:
        return self._lifecycle.state

    @property
    def lifecycle(self) -> HandlerLifecycle:
        return self._lifecycle

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def init(self, identity: Optional[Identity], as_server: bool) -> bool:
        self._require_uninitialized()
        self._role = Role.from_flag(as_server)

        if identity is None:
            ok = self._can_run_unbound()
            if not ok:
                self._info = "no identity available"
        else:
            ok = self.accepts_identity(identity)
            if ok:
                self._identity = identity
            else:
                self._info = (
                    f"identity for '{identity.auth_protocol}' cannot be used "
                    f"with '{self.protocol_name}'"
                )

        self._commit_init("handshake", ok)
        return ok

    def init_from_config(self, attributes: Mapping[str, str]) -> bool:
        self._require_uninitialized()
        self._role = Role.from_flag(attributes.get("role") == "server")

        ok = False
        try:
            identity = self._identity_from_config(attributes)
        except ConfigurationError as e:
            self._info = e.message
        else:
            ok = self.accepts_identity(identity)
            if ok:
                self._identity = identity

        self._commit_init("config", ok)
        return ok

    def accepts_identity(self, identity: Identity) -> bool:
        """Return True if ``identity`` can drive this protocol."""
        return (
            isinstance(identity, self.IDENTITY_TYPE)
            and identity.auth_protocol == self.protocol_name
        )

    def _require_uninitialized(self) -> None:
        if self._lifecycle.state is not HandlerPhase.UNINIT:
            raise StateError(f"Handler '{self.protocol_name}' is already initialized")

    def _commit_init(self, init_path: str, ok: bool) -> None:
        self._lifecycle.process_event(
            Initialized(
                role=self._role.value,
                init_path=init_path,
                success=ok,
                identity_name=self._identity.name if self._identity else "",
            )
        )
        if ok:
            self._logger.info(
                "handler_initialized",
                role=self._role.value,
                init_path=init_path,
                identity=self._identity.name if self._identity else None,
            )
        else:
            self._logger.warning(
                "handler_init_failed",
                role=self._role.value,
                init_path=init_path,
                reason=self._info,
            )

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self, channel: Channel) -> Outcome:
        replay = self._begin(ExchangePath.CHANNEL)
        if replay is not None:
            return replay
        with channel.takeover(self.protocol_name):
            try:
                return self._takeover(channel)
            except CommunicationError as e:
                self._abort(e.message)
                raise

    def get_data_for_peer(self, blob: Blob) -> Outcome:
        replay = self._begin(ExchangePath.BLOB)
        if replay is not None:
            return replay
        try:
            return self._produce_step(blob)
        except CommunicationError as e:
            self._abort(e.message)
            raise

    def handle_peer_data(self, blob: Blob) -> Outcome:
        replay = self._begin(ExchangePath.BLOB)
        if replay is not None:
            return replay
        try:
            return self._consume_step(blob)
        except CommunicationError as e:
            self._abort(e.message)
            raise

    def abort(self, reason: str) -> None:
        """Abandon the attempt; any credential is discarded."""
        self._abort(reason)

    def _begin(self, path: ExchangePath) -> Optional[Outcome]:
        if self._lifecycle.state is HandlerPhase.ABORTED:
            raise StateError(f"Handler '{self.protocol_name}' was aborted")
        if self._path is None:
            self._path = path
        elif self._path is not path:
            raise StateError(
                f"Handler '{self.protocol_name}' already uses {self._path.name} "
                f"exchange; cannot switch to {path.name}"
            )
        if self._final is not None:
            return self._final
        if not self._has_usable_identity():
            return self._record(Outcome(ProcessingMode.NO_IDENTITY))
        return None

    def _has_usable_identity(self) -> bool:
        if self._lifecycle.state is HandlerPhase.UNINIT:
            return False
        if not self._lifecycle.context.init_ok:
            return False
        if self._identity is not None:
            return True
        return self._can_run_unbound()

    def _can_run_unbound(self) -> bool:
        """True if the handler can run without a bound identity."""
        return self.is_server and self.identities is not None

    def _produce_step(self, blob: Blob) -> Outcome:
        if not self._outbound and self._after_flush is None:
            payload, then = self._next_message()
            self._outbound.extend(payload)
            self._after_flush = then
        return self._record(self._flush(blob))

    def _consume_step(self, blob: Blob) -> Outcome:
        self._inbound.extend(blob.read_remaining())
        frame_length = self._frame_length(bytes(self._inbound))
        if frame_length is None:
            return self._record(Outcome(ProcessingMode.NEED_DATA))
        frame = bytes(self._inbound[:frame_length])
        del self._inbound[:frame_length]
        return self._record(self._handle_message(frame))

    def _flush(self, blob: Blob) -> Outcome:
        written = blob.write(bytes(self._outbound))
        del self._outbound[:written]
        if self._outbound:
            return Outcome(ProcessingMode.PENDING_DATA)
        then = self._required(self._after_flush, "outcome for the sent message")
        self._after_flush = None
        return then

    def _record(self, outcome: Outcome) -> Outcome:
        mode = outcome.mode
        path = self._path or ExchangePath.BLOB
        identity_name = self._identity.name if self._identity else ""
        credential = None

        if mode is ProcessingMode.SUCCESS:
            credential = self._pending_credential
            if credential is None:
                raise InvariantViolation(
                    f"Handler '{self.protocol_name}' reported SUCCESS without a credential"
                )
            event: Any = Succeeded(credential.user, identity_name, path)
        elif mode is ProcessingMode.FAILED:
            if not self._info:
                self._info = "authentication failed"
            event = Failed(self._info, path)
        elif mode is ProcessingMode.NOT_SUPPORTED:
            event = NotSupported(path)
        elif mode is ProcessingMode.NO_IDENTITY:
            if not self._info:
                self._info = "no usable identity"
            event = NoIdentity(path)
        elif mode is ProcessingMode.DELEGATED:
            event = Delegated(self._info, path)
        else:
            event = Step(mode, path, identity_name)

        result = self._lifecycle.process_event(event)
        if isinstance(result, Failure):
            raise StateError(result.failure())

        if credential is not None:
            self._credential = credential
        if mode.is_terminal or mode is ProcessingMode.DELEGATED:
            self._final = outcome
            self._logger.info(
                "handler_finished",
                role=self._role.value,
                outcome=mode.name,
                info=self._info or None,
                peer=credential.user if credential else None,
            )
        else:
            self._logger.debug("auth_step", role=self._role.value, outcome=str(outcome))
        return outcome

    def _abort(self, reason: str) -> None:
        self._pending_credential = None
        self._credential = None
        self._outbound.clear()
        self._inbound.clear()
        if not self._lifecycle.can_accept(Aborted):
            return
        self._info = reason
        self._final = None
        self._lifecycle.process_event(Aborted(reason))
        self._logger.warning("handler_aborted", role=self._role.value, reason=reason)

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def _fail(self, reason: str) -> Outcome:
        self._info = reason
        return Outcome(ProcessingMode.FAILED)

    def _succeed(self, credential: Credential) -> Outcome:
        self._pending_credential = credential
        return Outcome(ProcessingMode.SUCCESS)

    def _delegate(self, successor: str) -> Outcome:
        self._info = successor
        return Outcome(ProcessingMode.DELEGATED)

    def _bind_identity(self, identity: Identity) -> None:
        """Bind an identity learned during the exchange (server side)."""
        self._identity = identity

    def _required(self, value: Optional[T], what: str) -> T:
        """Return ``value``; None means a step ran out of order."""
        if value is None:
            raise InvariantViolation(
                f"Handler '{self.protocol_name}' has no {what} in phase {self.phase.name}"
            )
        return value

    # -------------------------------------------------------------------------
    # Protocol hooks
    # -------------------------------------------------------------------------

    def _takeover(self, channel: Channel) -> Outcome:
        """Run the handshake directly on ``channel``; default: unsupported."""
        return self._record(Outcome(ProcessingMode.NOT_SUPPORTED))

    @abstractmethod
    def _identity_from_config(self, attributes: Mapping[str, str]) -> Identity:
        """Build an identity from attributes; raise ConfigurationError if incomplete."""
        ...

    @abstractmethod
    def _next_message(self) -> Tuple[bytes, Outcome]:
        """Return the next outbound message and the outcome once it is sent."""
        ...

    @abstractmethod
    def _frame_length(self, buffer: bytes) -> Optional[int]:
        """
        Length of the first complete message in ``buffer``.

        Returns None while the message is incomplete; raises
        MalformedDataError if the buffer cannot start a valid message.
        """
        ...

    @abstractmethod
    def _handle_message(self, frame: bytes) -> Outcome:
        """Process one complete peer message."""
        ...
