"""
styxauth p9sk Handlers

Shared-key mutual challenge/response (p9sk1 and p9sk2).

Flow:
1. Client sends a ticket request (proto, user, domain, client challenge)
2. Server checks protocol and user, answers with its challenge and a MAC
   proving it knows the user's key
3. Client verifies the server MAC and answers with its own MAC
4. Server verifies the client MAC

Keys are derived from the password with PBKDF2 salted by protocol, domain
and user; the MACs cover both challenges, so a captured exchange cannot be
replayed. Either side that rejects the peer sends an error message before
reporting FAILED so the peer does not wait for data that never comes.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Callable, ClassVar, Mapping, Optional, Tuple, Type

import attrs

from styxauth.core.crypto import (
    derive_key_from_password,
    derive_session_secret,
    generate_challenge,
    hmac_sha256,
    verify_hmac,
)
from styxauth.core.exceptions import ConfigurationError, MalformedDataError
from styxauth.core.handler import GenericHandler, require_attribute
from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode
from styxauth.p9sk.types import (
    LEN_CHALL,
    AuthErrorMessage,
    ClientAuthenticator,
    P9skIdentity,
    ServerAuthenticator,
    TicketRequest,
    decode_message,
    encode_client_authenticator,
    encode_error,
    encode_server_authenticator,
    encode_ticket_request,
    message_length,
)


class P9skState(Enum):
    INITIAL = auto()
    SEND_AS = auto()        # server
    AWAIT_AS = auto()       # client
    SEND_AC = auto()        # client
    AWAIT_AC = auto()       # server
    SEND_ERROR = auto()
    DONE = auto()


ChallengeSource = Callable[[int], bytes]


def p9sk_key(protocol: str, domain: str, user: str, password: str) -> bytes:
    """Derive the long-term key of ``user`` for one protocol and domain."""
    salt = f"{protocol}:{domain}:{user}".encode("utf-8")
    return derive_key_from_password(password, salt)


@attrs.define
class P9skHandler(GenericHandler):
    """
    Base for the p9sk protocol family.

    Attributes:
        challenge_source: Produces challenges (random by default)
    """

    IDENTITY_TYPE: ClassVar[Type[Identity]] = P9skIdentity

    challenge_source: ChallengeSource = generate_challenge

    _state: P9skState = attrs.field(default=P9skState.INITIAL, init=False)
    _request: Optional[TicketRequest] = attrs.field(default=None, init=False)
    _server_challenge: bytes = attrs.field(default=b"", init=False, repr=False)
    _server_name: str = attrs.field(default="", init=False)
    _key: bytes = attrs.field(default=b"", init=False, repr=False)
    _error: str = attrs.field(default="", init=False)

    def _identity_from_config(self, attributes: Mapping[str, str]) -> Identity:
        try:
            return P9skIdentity(
                name=require_attribute(attributes, "user"),
                auth_protocol=self.protocol_name,
                domain=(attributes.get("domain") or "").strip(),
                password=require_attribute(attributes, "password"),
            )
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    # -------------------------------------------------------------------------
    # Framing
    # -------------------------------------------------------------------------

    def _frame_length(self, buffer: bytes) -> Optional[int]:
        length = message_length(buffer)
        if length is None or len(buffer) < length:
            return None
        return length

    def _next_message(self) -> Tuple[bytes, Outcome]:
        if self._state is P9skState.SEND_ERROR:
            self._state = P9skState.DONE
            return encode_error(self._error), Outcome(ProcessingMode.FAILED)
        if self.is_server:
            if self._state is P9skState.SEND_AS:
                return self._server_authenticator()
        elif self._state is P9skState.INITIAL:
            return self._ticket_request()
        elif self._state is P9skState.SEND_AC:
            return self._client_authenticator()
        return b"", self._fail(f"no {self.protocol_name} message to send in state {self._state.name}")

    def _handle_message(self, frame: bytes) -> Outcome:
        message = decode_message(frame)
        if isinstance(message, AuthErrorMessage):
            self._state = P9skState.DONE
            return self._fail(f"peer rejected authentication: {message.reason}")

        if self.is_server:
            if self._state is P9skState.INITIAL and isinstance(message, TicketRequest):
                return self._handle_ticket_request(message)
            if self._state is P9skState.AWAIT_AC and isinstance(message, ClientAuthenticator):
                return self._handle_client_authenticator(message)
        elif self._state is P9skState.AWAIT_AS and isinstance(message, ServerAuthenticator):
            return self._handle_server_authenticator(message)

        raise MalformedDataError(
            f"Unexpected {type(message).__name__} in state {self._state.name}"
        )

    # -------------------------------------------------------------------------
    # Client side
    # -------------------------------------------------------------------------

    def _ticket_request(self) -> Tuple[bytes, Outcome]:
        identity = self._required(self._own_identity(), "p9sk identity")
        self._request = TicketRequest(
            protocol=self.protocol_name,
            user=identity.name,
            domain=identity.domain,
            client_challenge=self.challenge_source(LEN_CHALL),
        )
        self._key = p9sk_key(self.protocol_name, identity.domain, identity.name, identity.password)
        self._state = P9skState.AWAIT_AS
        return encode_ticket_request(self._request), Outcome(ProcessingMode.NEED_DATA)

    def _handle_server_authenticator(self, message: ServerAuthenticator) -> Outcome:
        request = self._required(self._request, "ticket request")
        self._server_challenge = message.server_challenge
        self._server_name = message.server
        if message.server_challenge == request.client_challenge:
            return self._reject("replayed challenge")
        if not verify_hmac(self._key, self._transcript(b"AuthAs", message.server), message.mac):
            return self._reject("server authenticator mismatch")
        self._state = P9skState.SEND_AC
        return Outcome(ProcessingMode.PENDING_DATA)

    def _client_authenticator(self) -> Tuple[bytes, Outcome]:
        mac = hmac_sha256(self._key, self._transcript(b"AuthAc", self._server_name))
        self._state = P9skState.DONE
        peer = self._server_name or self.protocol_name
        return (
            encode_client_authenticator(ClientAuthenticator(mac=mac)),
            self._succeed(self._credential_for(peer)),
        )

    # -------------------------------------------------------------------------
    # Server side
    # -------------------------------------------------------------------------

    def _handle_ticket_request(self, request: TicketRequest) -> Outcome:
        self._request = request
        if request.protocol != self.protocol_name:
            return self._reject(
                f"protocol mismatch: client requested '{request.protocol}', "
                f"server runs '{self.protocol_name}'"
            )

        own = self._own_identity()
        if own is not None and own.domain and request.domain != own.domain:
            return self._reject(f"unknown auth domain '{request.domain}'")

        peer = self._lookup_user(request.user, request.domain)
        if peer is None:
            return self._reject(f"unknown user '{request.user}'")

        self._key = p9sk_key(self.protocol_name, request.domain, request.user, peer.password)
        self._server_challenge = self.challenge_source(LEN_CHALL)
        if self._server_challenge == request.client_challenge:
            return self._reject("replayed challenge")

        self._server_name = own.name if own is not None else (request.domain or self.protocol_name)
        if self._identity is None:
            self._bind_identity(peer)
        self._state = P9skState.SEND_AS
        return Outcome(ProcessingMode.PENDING_DATA)

    def _server_authenticator(self) -> Tuple[bytes, Outcome]:
        mac = hmac_sha256(self._key, self._transcript(b"AuthAs", self._server_name))
        self._state = P9skState.AWAIT_AC
        message = ServerAuthenticator(
            server=self._server_name,
            server_challenge=self._server_challenge,
            mac=mac,
        )
        return encode_server_authenticator(message), Outcome(ProcessingMode.NEED_DATA)

    def _handle_client_authenticator(self, message: ClientAuthenticator) -> Outcome:
        request = self._required(self._request, "ticket request")
        self._state = P9skState.DONE
        if not verify_hmac(self._key, self._transcript(b"AuthAc", self._server_name), message.mac):
            return self._fail("client authenticator mismatch")
        return self._succeed(self._credential_for(request.user))

    def _lookup_user(self, user: str, domain: str) -> Optional[P9skIdentity]:
        if self.identities is not None:
            entry = self.identities.find_key(self.protocol_name, user, domain)
            if isinstance(entry, P9skIdentity):
                return entry
        own = self._own_identity()
        if own is not None and own.name == user:
            return own
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _reject(self, reason: str) -> Outcome:
        """Fail after telling the peer why."""
        self._info = reason
        self._error = reason
        self._state = P9skState.SEND_ERROR
        self._logger.info("p9sk_rejected", role=self.role.value, reason=reason)
        return Outcome(ProcessingMode.PENDING_DATA)

    def _transcript(self, label: bytes, server: str) -> bytes:
        request = self._required(self._request, "ticket request")
        return b"|".join(
            [
                label,
                request.protocol.encode("utf-8"),
                request.user.encode("utf-8"),
                request.domain.encode("utf-8"),
                server.encode("utf-8"),
                request.client_challenge,
                self._server_challenge,
            ]
        )

    def _credential_for(self, user: str) -> Credential:
        request = self._required(self._request, "ticket request")
        secret = derive_session_secret(
            self._key,
            b"styx session|" + request.client_challenge + self._server_challenge,
        )
        return Credential(user=user, auth_protocol=self.protocol_name, secret=secret)

    def _own_identity(self) -> Optional[P9skIdentity]:
        identity = self._identity
        if isinstance(identity, P9skIdentity):
            return identity
        return None


@attrs.define
class P9sk1Handler(P9skHandler):
    """Plan 9 shared-key protocol, version 1."""

    PROTOCOL_NAME: ClassVar[str] = "p9sk1"


@attrs.define
class P9sk2Handler(P9skHandler):
    """Plan 9 shared-key protocol, version 2."""

    PROTOCOL_NAME: ClassVar[str] = "p9sk2"
