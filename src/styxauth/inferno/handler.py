"""
styxauth inferno Handler

Certificate based mutual authentication. The handshake strictly
alternates; the client sends first:

    C->S version        S->C version
    C->S certificate    S->C certificate
    C->S ephemeral key  S->C ephemeral key
    C->S signature      S->C signature
    C->S OK             S->C OK
    C->S algorithms

Each message is one section. Signatures cover both ephemeral X25519 keys;
the shared secret is HKDF over the X25519 result.

Unlike the p9 protocols, inferno can take over a channel directly; the
bytes on the wire are the same in both modes.
"""

from __future__ import annotations

import time
from enum import Enum, auto
from typing import Any, Callable, ClassVar, List, Mapping, Optional, Tuple, Type

import attrs

from styxauth.core import crypto
from styxauth.core.exceptions import ConfigurationError, CryptoError, MalformedDataError
from styxauth.core.exchange import run_exchange
from styxauth.core.handler import GenericHandler
from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode
from styxauth.inferno.types import (
    ACK,
    DEFAULT_ALGORITHMS,
    PROTOCOL_NAME,
    PROTOCOL_VERSION,
    InfernoCertificate,
    InfernoIdentity,
    encode_error_section,
    encode_section,
    error_reason,
    section_length,
    section_payload,
)
from styxauth.transport.channel import Channel, ChannelTransport


class Section(Enum):
    VERSION = auto()
    CERTIFICATE = auto()
    EPHEMERAL = auto()
    SIGNATURE = auto()
    ACK = auto()
    ALGORITHMS = auto()


_PAIRED = [Section.VERSION, Section.CERTIFICATE, Section.EPHEMERAL, Section.SIGNATURE, Section.ACK]

# (send?, section) per role, in order.
CLIENT_STEPS: List[Tuple[bool, Section]] = [
    step for section in _PAIRED for step in ((True, section), (False, section))
] + [(True, Section.ALGORITHMS)]
SERVER_STEPS: List[Tuple[bool, Section]] = [
    step for section in _PAIRED for step in ((False, section), (True, section))
] + [(False, Section.ALGORITHMS)]


@attrs.define
class InfernoHandler(GenericHandler):
    """
    inferno protocol handler.

    Attributes:
        algorithms: Channel protection the client asks for
        settle_seconds: If set, pause this long after sending the certificate
        wall_clock: Unix time source for certificate expiry
    """

    PROTOCOL_NAME: ClassVar[str] = PROTOCOL_NAME
    IDENTITY_TYPE: ClassVar[Type[Identity]] = InfernoIdentity

    algorithms: str = DEFAULT_ALGORITHMS
    settle_seconds: int = attrs.field(default=0, validator=attrs.validators.ge(0))
    wall_clock: Callable[[], float] = time.time

    _step: int = attrs.field(default=0, init=False)
    _settled: bool = attrs.field(default=False, init=False)
    _error: Optional[str] = attrs.field(default=None, init=False)
    _peer_certificate: Optional[InfernoCertificate] = attrs.field(default=None, init=False)
    _exchange_key: Any = attrs.field(default=None, init=False, repr=False)
    _own_ephemeral: bytes = attrs.field(default=b"", init=False, repr=False)
    _peer_ephemeral: bytes = attrs.field(default=b"", init=False, repr=False)
    _agreed_algorithms: Optional[str] = attrs.field(default=None, init=False)

    def _identity_from_config(self, attributes: Mapping[str, str]) -> Identity:
        # Keys are issued by a signer, not described by attributes.
        raise ConfigurationError("inferno identities are issued with issue_identity()")

    # -------------------------------------------------------------------------
    # Channel takeover
    # -------------------------------------------------------------------------

    def _takeover(self, channel: Channel) -> Outcome:
        self._logger.debug("inferno_takeover", role=self.role.value)
        return run_exchange(
            self._produce_step,
            self._consume_step,
            ChannelTransport(channel),
            initiate=self.initiates,
            clock=self.clock,
            limits=self.limits,
            protocol=self.protocol_name,
        )

    # -------------------------------------------------------------------------
    # Sequencing
    # -------------------------------------------------------------------------

    @property
    def _steps(self) -> List[Tuple[bool, Section]]:
        return SERVER_STEPS if self.is_server else CLIENT_STEPS

    def _current(self) -> Optional[Tuple[bool, Section]]:
        if self._step < len(self._steps):
            return self._steps[self._step]
        return None

    def _after_step(self) -> Outcome:
        """Outcome once the current step is done; advances the sequence."""
        self._step += 1
        nxt = self._current()
        if nxt is None:
            return self._succeed(self._make_credential())
        sending, section = nxt
        if not sending:
            return Outcome(ProcessingMode.NEED_DATA)
        if section is Section.ALGORITHMS:
            return Outcome(ProcessingMode.NO_MORE_DATA)
        return Outcome(ProcessingMode.PENDING_DATA)

    def _frame_length(self, buffer: bytes) -> Optional[int]:
        return section_length(buffer)

    def _next_message(self) -> Tuple[bytes, Outcome]:
        if self._error is not None:
            reason, self._error = self._error, None
            self._step = len(self._steps)
            return encode_error_section(reason), Outcome(ProcessingMode.FAILED)

        if self._settled:
            # Retry after WAIT: the certificate is already out.
            self._settled = False
            return b"", Outcome(ProcessingMode.NEED_DATA)

        current = self._current()
        if current is None or not current[0]:
            return b"", self._fail(f"inferno has nothing to send at step {self._step}")

        section = current[1]
        payload = self._payload(section)
        then = self._after_step()
        if section is Section.CERTIFICATE and self.settle_seconds and not then.is_terminal:
            self._settled = True
            then = Outcome.wait(self.settle_seconds)
        return encode_section(payload), then

    def _handle_message(self, frame: bytes) -> Outcome:
        payload = section_payload(frame)
        reason = error_reason(payload)
        if reason is not None:
            self._step = len(self._steps)
            return self._fail(f"peer reported: {reason}")

        current = self._current()
        if current is None or current[0]:
            raise MalformedDataError(f"Unexpected inferno section at step {self._step}")

        problem = self._check(current[1], payload)
        if problem is not None:
            return self._reject(problem)
        return self._after_step()

    def _reject(self, reason: str) -> Outcome:
        """Fail; tell the peer first unless it has already finished."""
        self._info = reason
        self._logger.info("inferno_rejected", role=self.role.value, reason=reason)
        if self._step >= len(self._steps) - 1:
            self._step = len(self._steps)
            return Outcome(ProcessingMode.FAILED)
        self._error = reason
        return Outcome(ProcessingMode.PENDING_DATA)

    # -------------------------------------------------------------------------
    # Outbound sections
    # -------------------------------------------------------------------------

    def _payload(self, section: Section) -> bytes:
        identity = self._inferno_identity()
        if section is Section.VERSION:
            return PROTOCOL_VERSION.encode("ascii")
        if section is Section.CERTIFICATE:
            return self._required(identity, "inferno identity").certificate.encode()
        if section is Section.EPHEMERAL:
            self._exchange_key, self._own_ephemeral = crypto.generate_exchange_key()
            return self._own_ephemeral
        if section is Section.SIGNATURE:
            key = self._required(identity, "inferno identity").private_key
            return crypto.sign(key, self._signed_transcript(self.role.value))
        if section is Section.ACK:
            return ACK.encode("ascii")
        self._agreed_algorithms = self.algorithms
        return self.algorithms.encode("utf-8")

    # -------------------------------------------------------------------------
    # Inbound checks
    # -------------------------------------------------------------------------

    def _check(self, section: Section, payload: bytes) -> Optional[str]:
        """Validate a peer section; returns a failure reason or None."""
        if section is Section.VERSION:
            if payload.decode("utf-8", errors="replace") != PROTOCOL_VERSION:
                return "incompatible authentication protocol version"
            return None
        if section is Section.CERTIFICATE:
            return self._check_certificate(InfernoCertificate.decode(payload))
        if section is Section.EPHEMERAL:
            if len(payload) != 32:
                raise MalformedDataError("Ephemeral key must be 32 bytes")
            if self._own_ephemeral and payload == self._own_ephemeral:
                return "replayed key exchange"
            self._peer_ephemeral = payload
            return None
        if section is Section.SIGNATURE:
            peer = self._required(self._peer_certificate, "peer certificate")
            peer_role = "client" if self.is_server else "server"
            if not crypto.verify_signature(
                peer.public_key,
                self._signed_transcript(peer_role),
                payload,
            ):
                return "peer signature does not verify"
            return None
        if section is Section.ACK:
            if payload != ACK.encode("ascii"):
                return "peer did not acknowledge"
            return None
        self._agreed_algorithms = payload.decode("utf-8", errors="replace")
        return None

    def _check_certificate(self, certificate: InfernoCertificate) -> Optional[str]:
        identity = self._inferno_identity()
        if identity is None and self.identities is not None:
            found = self.identities.find(self.protocol_name, certificate.signer)
            if isinstance(found, InfernoIdentity):
                self._bind_identity(found)
                identity = found
        if identity is None:
            return f"no identity for signer '{certificate.signer}'"
        if certificate.signer != identity.certificate.signer:
            return f"certificate signed by '{certificate.signer}', expected '{identity.certificate.signer}'"
        if not certificate.verify(identity.signer_key):
            return "certificate signature does not verify"
        if certificate.is_expired(self.wall_clock()):
            return "certificate expired"
        self._peer_certificate = certificate
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _signed_transcript(self, role: str) -> bytes:
        if self.is_server:
            client_key, server_key = self._peer_ephemeral, self._own_ephemeral
        else:
            client_key, server_key = self._own_ephemeral, self._peer_ephemeral
        return b"|".join([b"inferno", role.encode("ascii"), client_key, server_key])

    def _make_credential(self) -> Credential:
        peer = self._required(self._peer_certificate, "peer certificate")
        try:
            shared = crypto.exchange_shared_secret(self._exchange_key, self._peer_ephemeral)
        except CryptoError as e:
            raise MalformedDataError(f"Key agreement with peer failed: {e.message}") from e
        if self.is_server:
            salt = self._peer_ephemeral + self._own_ephemeral
        else:
            salt = self._own_ephemeral + self._peer_ephemeral
        secret = crypto.derive_session_secret(shared, b"inferno session|" + salt)
        return Credential(
            user=peer.name,
            auth_protocol=self.protocol_name,
            groups=(peer.signer,),
            secret=secret,
            algorithms=self._agreed_algorithms,
        )

    def _inferno_identity(self) -> Optional[InfernoIdentity]:
        identity = self._identity
        if isinstance(identity, InfernoIdentity):
            return identity
        return None
