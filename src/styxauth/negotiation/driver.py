"""
styxauth Negotiation Driver

Selects a handler by protocol name, initializes it and runs it to a final
outcome, following DELEGATED hand-offs to successor handlers.

Two entry points:
- negotiate(): blob exchange over any transport (also the envelope mode)
- negotiate_channel(): tries channel takeover first and falls back to
  blob exchange over the same channel on NOT_SUPPORTED
"""

from __future__ import annotations

from typing import Any, List, Optional, Tuple

import attrs
import structlog

from styxauth.core.exceptions import CommunicationError, DelegationError
from styxauth.core.exchange import (
    BlobTransport,
    Clock,
    ExchangeLimits,
    SystemClock,
    run_exchange,
)
from styxauth.core.handler import GenericHandler
from styxauth.core.registry import HandlerRegistry, default_registry
from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode
from styxauth.negotiation.config import NegotiationConfig
from styxauth.negotiation.identities import IdentityStore
from styxauth.transport.channel import Channel, ChannelTransport

logger = structlog.get_logger()

# Protocols that only ever run inside the blob exchange.
ENVELOPE_PROTOCOLS = frozenset({"p9any"})


@attrs.define(frozen=True, slots=True)
class NegotiationResult:
    """
    Final result of one negotiation.

    Attributes:
        mode: Final processing mode of the last handler
        protocol: Protocol of the last handler in the chain
        credential: Peer credential (only on SUCCESS)
        info: Failure reason (on FAILED) from the last handler
        chain: Protocols run, in order
        identity: Identity bound by the last handler
    """

    mode: ProcessingMode
    protocol: str
    credential: Optional[Credential] = None
    info: str = ""
    chain: Tuple[str, ...] = ()
    identity: Optional[Identity] = attrs.field(default=None, repr=False)

    @property
    def success(self) -> bool:
        return self.mode is ProcessingMode.SUCCESS


@attrs.define
class Negotiator:
    """
    Negotiation driver.

    Example:
        negotiator = Negotiator(identities=store)
        result = negotiator.negotiate("p9any", transport, as_server=False)
        if result.success:
            session.bind(result.credential)
    """

    registry: HandlerRegistry = attrs.Factory(default_registry)
    identities: IdentityStore = attrs.Factory(IdentityStore)
    config: NegotiationConfig = attrs.Factory(NegotiationConfig)
    clock: Clock = attrs.Factory(SystemClock)
    _logger: Any = attrs.field(factory=lambda: structlog.get_logger(), init=False, repr=False)

    def create_handler(self, protocol: str, deadline: Optional[float] = None) -> GenericHandler:
        """Create a fresh handler sharing this driver's store, clock and limits."""
        return self.registry.create(
            protocol,
            identities=self.identities,
            clock=self.clock,
            limits=self._limits(deadline),
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def negotiate(
        self,
        protocol: str,
        transport: BlobTransport,
        *,
        as_server: bool,
        identity: Optional[Identity] = None,
    ) -> NegotiationResult:
        """
        Run a blob exchange negotiation.

        Args:
            protocol: Protocol to start with
            transport: Peer connection
            as_server: Role of this side
            identity: Identity to use (looked up in the store if None)

        Raises:
            ConfigurationError: ``protocol`` is not registered
            DelegationError: a hand-off cannot be followed
            CommunicationError: transport failure, malformed data or timeout
        """
        return self._negotiate(protocol, transport, as_server, identity, self._deadline())

    def negotiate_channel(
        self,
        protocol: str,
        channel: Channel,
        *,
        as_server: bool,
        identity: Optional[Identity] = None,
        envelope: bool = False,
    ) -> NegotiationResult:
        """
        Negotiate directly on ``channel``.

        Channel takeover is attempted unless ``envelope`` is set or the
        protocol is an envelope protocol. A handler answering
        NOT_SUPPORTED is replaced by a fresh one in blob exchange mode.
        Both attempts share one deadline.
        """
        deadline = self._deadline()
        transport = ChannelTransport(channel)
        if envelope or protocol in ENVELOPE_PROTOCOLS:
            return self._negotiate(protocol, transport, as_server, identity, deadline)

        handler = self._start(protocol, as_server, identity, deadline=deadline)
        try:
            outcome = handler.process(channel)
        except CommunicationError as e:
            self._logger.warning(
                "negotiation_aborted",
                protocol=protocol,
                chain=[protocol],
                error=e.message,
            )
            raise

        if outcome.mode is ProcessingMode.NOT_SUPPORTED:
            self._logger.info("takeover_fallback", protocol=protocol)
            return self._negotiate(protocol, transport, as_server, identity, deadline)

        chain = [protocol]
        if outcome.mode is ProcessingMode.DELEGATED:
            successor = self._delegate(handler, chain, as_server, deadline)
            return self._run_chain(successor, transport, deadline, as_server, chain)
        return self._finish(handler, outcome, chain)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _negotiate(
        self,
        protocol: str,
        transport: BlobTransport,
        as_server: bool,
        identity: Optional[Identity],
        deadline: Optional[float],
    ) -> NegotiationResult:
        handler = self._start(protocol, as_server, identity, deadline=deadline)
        return self._run_chain(handler, transport, deadline, as_server, [protocol])

    def _deadline(self) -> Optional[float]:
        if self.config.timeout_seconds is None:
            return None
        return self.clock.monotonic() + self.config.timeout_seconds

    def _limits(self, deadline: Optional[float]) -> ExchangeLimits:
        return ExchangeLimits(
            blob_size=self.config.blob_size,
            max_steps=self.config.max_steps,
            deadline=deadline,
        )

    def _start(
        self,
        protocol: str,
        as_server: bool,
        identity: Optional[Identity],
        domain: str = "",
        deadline: Optional[float] = None,
    ) -> GenericHandler:
        handler = self.create_handler(protocol, deadline)
        if identity is None:
            identity = self.identities.find(protocol, domain)
        handler.init(identity, as_server)
        return handler

    def _run_chain(
        self,
        handler: GenericHandler,
        transport: BlobTransport,
        deadline: Optional[float],
        as_server: bool,
        chain: List[str],
    ) -> NegotiationResult:
        limits = self._limits(deadline)
        while True:
            try:
                outcome = run_exchange(
                    handler.get_data_for_peer,
                    handler.handle_peer_data,
                    transport,
                    initiate=handler.initiates,
                    clock=self.clock,
                    limits=limits,
                    protocol=handler.protocol_name,
                )
            except CommunicationError as e:
                handler.abort(e.message)
                self._logger.warning(
                    "negotiation_aborted",
                    protocol=handler.protocol_name,
                    chain=list(chain),
                    error=e.message,
                )
                raise

            if outcome.mode is not ProcessingMode.DELEGATED:
                return self._finish(handler, outcome, chain)
            handler = self._delegate(handler, chain, as_server, deadline)

    def _delegate(
        self,
        handler: GenericHandler,
        chain: List[str],
        as_server: bool,
        deadline: Optional[float],
    ) -> GenericHandler:
        """Validate a DELEGATED hand-off and start the successor handler."""
        successor = handler.info
        if successor in chain:
            raise DelegationError(
                f"Delegation cycle: {' -> '.join(chain + [successor])}"
            )
        if len(chain) > self.config.max_delegations:
            raise DelegationError(
                f"Delegation chain exceeds {self.config.max_delegations} hand-offs"
            )
        if not self.registry.is_registered(successor):
            raise DelegationError(
                f"'{handler.protocol_name}' delegated to unregistered protocol '{successor}'"
            )

        chain.append(successor)
        self._logger.info(
            "delegation",
            from_protocol=handler.protocol_name,
            to_protocol=successor,
            domain=handler.delegation_domain or None,
        )
        return self._start(successor, as_server, None, handler.delegation_domain, deadline)

    def _finish(
        self,
        handler: GenericHandler,
        outcome: Outcome,
        chain: List[str],
    ) -> NegotiationResult:
        result = NegotiationResult(
            mode=outcome.mode,
            protocol=handler.protocol_name,
            credential=handler.peer_credential,
            info=handler.info,
            chain=tuple(chain),
            identity=handler.identity,
        )
        self._logger.info(
            "negotiation_complete",
            protocol=result.protocol,
            outcome=result.mode.name,
            chain=list(result.chain),
            peer=result.credential.user if result.credential else None,
            info=result.info or None,
        )
        return result
