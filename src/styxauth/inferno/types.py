"""
styxauth inferno Types

Certificates, identities and section framing of the inferno protocol.

A section is a 4-digit decimal length, a newline and the payload:

    "0001\\n1"

An error section carries ``*ERROR*`` on its first payload line and the
reason on the second.
"""

from __future__ import annotations

import re
from typing import List, Optional

import attrs
from attrs import field, validators

from styxauth.core import crypto
from styxauth.core.exceptions import MalformedDataError
from styxauth.core.types import Identity


PROTOCOL_NAME = "inferno"
PROTOCOL_VERSION = "1"
ERROR_MARKER = "*ERROR*"
ACK = "OK"
DEFAULT_ALGORITHMS = "none"

HEADER_LENGTH = 5
MAX_SECTION = 9999

_HEADER = re.compile(rb"^[0-9]{4}\n")


# =============================================================================
# CERTIFICATES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class InfernoCertificate:
    """
    Public key of ``name`` signed by ``signer``.

    Attributes:
        name: Certified principal
        signer: Name of the signing authority (the auth domain)
        public_key: Raw Ed25519 public key of the principal
        expires: Expiry as Unix time (0 = never)
        signature: Signer's Ed25519 signature over the other fields
    """

    name: str = field(validator=validators.min_len(1))
    signer: str = field(validator=validators.min_len(1))
    public_key: bytes = field(repr=False, validator=validators.instance_of(bytes))
    expires: int = field(default=0, validator=validators.ge(0))
    signature: bytes = field(default=b"", repr=False)

    def signed_data(self) -> bytes:
        return f"{self.name}\n{self.signer}\n{self.expires}\n".encode("utf-8") + self.public_key

    def verify(self, signer_key: bytes) -> bool:
        """True if ``signer_key`` made this certificate's signature."""
        return crypto.verify_signature(signer_key, self.signed_data(), self.signature)

    def is_expired(self, now: float) -> bool:
        return self.expires != 0 and self.expires < now

    def encode(self) -> bytes:
        return "\n".join(
            [
                self.name,
                self.signer,
                str(self.expires),
                self.public_key.hex(),
                self.signature.hex(),
            ]
        ).encode("utf-8")

    @classmethod
    def decode(cls, payload: bytes) -> InfernoCertificate:
        """
        Raises:
            MalformedDataError: payload is not a certificate
        """
        lines = payload.decode("utf-8", errors="replace").split("\n")
        if len(lines) != 5:
            raise MalformedDataError("Certificate must have 5 lines")
        try:
            return cls(
                name=lines[0],
                signer=lines[1],
                expires=int(lines[2]),
                public_key=bytes.fromhex(lines[3]),
                signature=bytes.fromhex(lines[4]),
            )
        except ValueError as e:
            raise MalformedDataError(f"Invalid certificate: {e}") from e


@attrs.define(frozen=True, slots=True)
class InfernoIdentity(Identity):
    """
    Principal holding a signer-issued certificate.

    ``domain`` is the signer name; ``signer_key`` verifies the
    certificates of peers from the same signer.
    """

    private_key: bytes = field(kw_only=True, repr=False)
    certificate: InfernoCertificate = field(kw_only=True)
    signer_key: bytes = field(kw_only=True, repr=False)


@attrs.define(frozen=True, slots=True)
class InfernoSigner:
    """Signing authority issuing inferno identities."""

    name: str = field(validator=validators.min_len(1))
    private_key: bytes = field(repr=False)
    public_key: bytes = field(repr=False)

    @classmethod
    def generate(cls, name: str) -> InfernoSigner:
        private_key, public_key = crypto.generate_signing_key()
        return cls(name=name, private_key=private_key, public_key=public_key)

    def issue(self, name: str, expires: int = 0) -> InfernoIdentity:
        return issue_identity(self, name, expires)


def issue_identity(signer: InfernoSigner, name: str, expires: int = 0) -> InfernoIdentity:
    """
    Create a fresh key pair for ``name`` and certify it with ``signer``.

    Example:
        signer = InfernoSigner.generate("styx.example")
        alice = issue_identity(signer, "alice")
    """
    private_key, public_key = crypto.generate_signing_key()
    unsigned = InfernoCertificate(
        name=name,
        signer=signer.name,
        public_key=public_key,
        expires=expires,
    )
    certificate = attrs.evolve(
        unsigned,
        signature=crypto.sign(signer.private_key, unsigned.signed_data()),
    )
    return InfernoIdentity(
        name=name,
        auth_protocol=PROTOCOL_NAME,
        domain=signer.name,
        private_key=private_key,
        certificate=certificate,
        signer_key=signer.public_key,
    )


# =============================================================================
# SECTIONS
# =============================================================================


def encode_section(payload: bytes) -> bytes:
    if len(payload) > MAX_SECTION:
        raise ValueError(f"Section payload too large ({len(payload)} bytes)")
    return b"%04d\n" % len(payload) + payload


def encode_error_section(reason: str) -> bytes:
    return encode_section(f"{ERROR_MARKER}\n{reason}".encode("utf-8"))


def section_length(buffer: bytes) -> Optional[int]:
    """
    Total length of the section starting ``buffer``.

    Returns None while the header or payload is incomplete.

    Raises:
        MalformedDataError: buffer does not start with a section header
    """
    if len(buffer) < HEADER_LENGTH:
        if buffer and not buffer[:1].isdigit():
            raise MalformedDataError("Not an inferno section")
        return None
    if not _HEADER.match(buffer):
        raise MalformedDataError("Not an inferno section")
    total = HEADER_LENGTH + int(buffer[:4])
    if len(buffer) < total:
        return None
    return total


def section_payload(frame: bytes) -> bytes:
    return frame[HEADER_LENGTH:]


def error_reason(payload: bytes) -> Optional[str]:
    """Reason carried by an error section, or None for other sections."""
    lines: List[str] = payload.decode("utf-8", errors="replace").split("\n", 1)
    if lines[0] != ERROR_MARKER:
        return None
    return lines[1] if len(lines) > 1 else "unspecified error"


def looks_like_auth_message(data: bytes) -> bool:
    """
    True if ``data`` starts with an inferno version section.

    Used to recognise a peer that starts the inferno handshake directly on
    a fresh connection.
    """
    if not _HEADER.match(data):
        return False
    length = int(data[:4])
    payload = data[HEADER_LENGTH : HEADER_LENGTH + length]
    return 0 < length <= 16 and (len(payload) < length or payload.isdigit())
