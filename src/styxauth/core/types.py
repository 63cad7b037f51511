"""
styxauth Core Types

Value types shared by every authentication protocol handler:

- Identity: a named credential holder scoped to one protocol
- Credential: proof of a verified peer identity
- ProcessingMode / Outcome: the result alphabet of a processing step

Design Principles:
- Immutable: all types use frozen attrs
- Validated: constraints enforced at construction
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

import attrs
from attrs import field, validators


# =============================================================================
# PROCESSING MODES
# =============================================================================


class ProcessingMode(Enum):
    """
    Result of one handler processing call.

    Values match the processing mode numbers of the Styx authentication
    interface.
    """

    NO_IDENTITY = -2
    NOT_SUPPORTED = -1
    FAILED = 0
    SUCCESS = 1
    NEED_DATA = 2
    PENDING_DATA = 3
    CONTINUE = 4
    WAIT = 5
    NO_MORE_DATA = 6
    DELEGATED = 7

    @property
    def is_terminal(self) -> bool:
        """Return True if this mode ends the handler's involvement."""
        return self in _TERMINAL_MODES


_TERMINAL_MODES = frozenset(
    {
        ProcessingMode.SUCCESS,
        ProcessingMode.FAILED,
        ProcessingMode.NOT_SUPPORTED,
        ProcessingMode.NO_IDENTITY,
    }
)


class Role(Enum):
    """Side of the negotiation a handler acts for."""

    CLIENT = "client"
    SERVER = "server"

    @classmethod
    def from_flag(cls, as_server: bool) -> Role:
        return cls.SERVER if as_server else cls.CLIENT


@attrs.define(frozen=True, slots=True)
class Outcome:
    """
    Tagged result of a processing call.

    WAIT carries its pause in ``wait_seconds``; every other mode has
    ``wait_seconds == 0``.
    """

    mode: ProcessingMode = field(validator=validators.instance_of(ProcessingMode))
    wait_seconds: int = field(
        default=0,
        validator=[validators.instance_of(int), validators.ge(0)],
    )

    def __attrs_post_init__(self) -> None:
        if self.mode is not ProcessingMode.WAIT and self.wait_seconds:
            raise ValueError(f"{self.mode.name} cannot carry a wait duration")

    @classmethod
    def wait(cls, seconds: int) -> Outcome:
        """Ask the driver to pause ``seconds`` before retrying."""
        return cls(ProcessingMode.WAIT, seconds)

    @property
    def is_terminal(self) -> bool:
        return self.mode.is_terminal

    def __str__(self) -> str:
        if self.mode is ProcessingMode.WAIT:
            return f"WAIT({self.wait_seconds}s)"
        return self.mode.name


# =============================================================================
# IDENTITY TYPES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Identity:
    """
    Named credential holder scoped to one authentication protocol.

    INVARIANT: name and auth_protocol are non-empty

    Protocol handlers subclass this to attach their secret material.
    """

    name: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    auth_protocol: str = field(
        validator=[validators.instance_of(str), validators.min_len(1)]
    )
    domain: str = field(default="", validator=validators.instance_of(str))

    @property
    def spec(self) -> str:
        """Lookup key ``proto@domain`` (``proto`` without a domain)."""
        if self.domain:
            return f"{self.auth_protocol}@{self.domain}"
        return self.auth_protocol

    def __str__(self) -> str:
        return f"{self.name} ({self.spec})"


# =============================================================================
# CREDENTIAL
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Credential:
    """
    Proof that a peer authenticated as ``user``.

    Issued by a handler exactly once, on its transition into SUCCESS, and
    handed to the session layer by the driver.

    Attributes:
        user: Authenticated peer name
        auth_protocol: Protocol that verified the peer
        groups: Group memberships of the peer
        secret: Shared secret established during the handshake
        algorithms: Channel protection algorithms agreed on (if any)
        issued_at: When the credential was created
    """

    user: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    auth_protocol: str = field(validator=validators.instance_of(str))
    groups: Tuple[str, ...] = field(factory=tuple, converter=tuple)
    secret: bytes = field(default=b"", validator=validators.instance_of(bytes), repr=False)
    algorithms: Optional[str] = None
    issued_at: datetime = field(factory=lambda: datetime.now(timezone.utc))

    @property
    def authenticated(self) -> bool:
        return True

    @property
    def group(self) -> str:
        """Primary group: the first group, or the user itself."""
        if self.groups:
            return self.groups[0]
        return self.user

    def is_member(self, group: str) -> bool:
        return group in self.groups

    def get_secret(self) -> bytes:
        return bytes(self.secret)
