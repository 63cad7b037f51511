"""
styxauth p9sk Types

Identity and fixed-width wire messages of the p9sk1 / p9sk2 shared-key
handshake.

    Treq  C->S  type=1   proto[28] user[28] domain[48] cchal[8]
    As    S->C  type=66  server[28] schal[8] mac[32]
    Ac    C->S  type=67  mac[32]
    Err   any   type=4   reason[64]

Strings are NUL-padded fixed-width fields (Plan 9 widths).
"""

from __future__ import annotations

from typing import Optional

import attrs
from attrs import field, validators

from styxauth.core.blob import Blob
from styxauth.core.exceptions import MalformedDataError
from styxauth.core.types import Identity


# =============================================================================
# CONSTANTS
# =============================================================================

AUTH_TREQ = 1
AUTH_ERR = 4
AUTH_AS = 66
AUTH_AC = 67

LEN_ANAME = 28
LEN_AUTHDOM = 48
LEN_CHALL = 8
LEN_MAC = 32
LEN_ERR = 64

LEN_TREQ = 1 + 2 * LEN_ANAME + LEN_AUTHDOM + LEN_CHALL
LEN_AS = 1 + LEN_ANAME + LEN_CHALL + LEN_MAC
LEN_AC = 1 + LEN_MAC
LEN_ERROR = 1 + LEN_ERR

MESSAGE_LENGTHS = {
    AUTH_TREQ: LEN_TREQ,
    AUTH_AS: LEN_AS,
    AUTH_AC: LEN_AC,
    AUTH_ERR: LEN_ERROR,
}


def check_field_width(what: str, text: str, width: int) -> None:
    """Raise ValueError unless ``text`` fits a NUL-terminated field of ``width``."""
    size = len(text.encode("utf-8"))
    if size > width - 1:
        raise ValueError(f"{what} '{text}' is {size} bytes; at most {width - 1} fit on the wire")


# =============================================================================
# IDENTITY
# =============================================================================


@attrs.define(frozen=True, slots=True)
class P9skIdentity(Identity):
    """
    User (or server account) with a shared password.

    The same type is used for own identities and for keyring entries.
    Names and domains must fit their fixed-width wire fields.

    Raises:
        ValueError: name or domain too long for the wire format
    """

    password: str = field(
        kw_only=True,
        repr=False,
        validator=[validators.instance_of(str), validators.min_len(1)],
    )

    def __attrs_post_init__(self) -> None:
        check_field_width("user name", self.name, LEN_ANAME)
        check_field_width("auth domain", self.domain, LEN_AUTHDOM)

    @classmethod
    def create(
        cls,
        user: str,
        password: str,
        domain: str = "",
        protocol: str = "p9sk1",
    ) -> P9skIdentity:
        return cls(name=user, auth_protocol=protocol, domain=domain, password=password)


# =============================================================================
# MESSAGES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class TicketRequest:
    protocol: str
    user: str
    domain: str
    client_challenge: bytes = field(repr=False)


@attrs.define(frozen=True, slots=True)
class ServerAuthenticator:
    server: str
    server_challenge: bytes = field(repr=False)
    mac: bytes = field(repr=False)


@attrs.define(frozen=True, slots=True)
class ClientAuthenticator:
    mac: bytes = field(repr=False)


@attrs.define(frozen=True, slots=True)
class AuthErrorMessage:
    reason: str


def message_length(buffer: bytes) -> Optional[int]:
    """Length of the message starting ``buffer`` (None if empty)."""
    if not buffer:
        return None
    length = MESSAGE_LENGTHS.get(buffer[0])
    if length is None:
        raise MalformedDataError(f"Unknown p9sk message type {buffer[0]}")
    return length


def encode_ticket_request(msg: TicketRequest) -> bytes:
    blob = Blob(LEN_TREQ)
    blob.put_byte(AUTH_TREQ)
    blob.put_padded_string(msg.protocol, LEN_ANAME)
    blob.put_padded_string(msg.user, LEN_ANAME)
    blob.put_padded_string(msg.domain, LEN_AUTHDOM)
    blob.write(_fixed(msg.client_challenge, LEN_CHALL))
    return blob.getvalue()


def encode_server_authenticator(msg: ServerAuthenticator) -> bytes:
    blob = Blob(LEN_AS)
    blob.put_byte(AUTH_AS)
    blob.put_padded_string(msg.server, LEN_ANAME)
    blob.write(_fixed(msg.server_challenge, LEN_CHALL))
    blob.write(_fixed(msg.mac, LEN_MAC))
    return blob.getvalue()


def encode_client_authenticator(msg: ClientAuthenticator) -> bytes:
    return bytes([AUTH_AC]) + _fixed(msg.mac, LEN_MAC)


def encode_error(reason: str) -> bytes:
    blob = Blob(LEN_ERROR)
    blob.put_byte(AUTH_ERR)
    blob.put_padded_string(reason, LEN_ERR)
    return blob.getvalue()


def decode_message(frame: bytes) -> object:
    """
    Decode one complete message.

    Raises:
        MalformedDataError: unknown type or wrong length
    """
    expected = message_length(frame)
    if expected is None or len(frame) != expected:
        raise MalformedDataError(f"Truncated p9sk message ({len(frame)} bytes)")

    blob = Blob.wrap(frame)
    kind = blob.get_byte()
    if kind == AUTH_TREQ:
        return TicketRequest(
            protocol=blob.get_padded_string(LEN_ANAME),
            user=blob.get_padded_string(LEN_ANAME),
            domain=blob.get_padded_string(LEN_AUTHDOM),
            client_challenge=blob.read(LEN_CHALL),
        )
    if kind == AUTH_AS:
        return ServerAuthenticator(
            server=blob.get_padded_string(LEN_ANAME),
            server_challenge=blob.read(LEN_CHALL),
            mac=blob.read(LEN_MAC),
        )
    if kind == AUTH_AC:
        return ClientAuthenticator(mac=blob.read(LEN_MAC))
    return AuthErrorMessage(reason=blob.get_padded_string(LEN_ERR))


def _fixed(data: bytes, width: int) -> bytes:
    if len(data) != width:
        raise ValueError(f"Expected {width} bytes, got {len(data)}")
    return data
