"""
styxauth Exception Types

Faults raised by the authentication layer.

Negotiation outcomes (FAILED, NOT_SUPPORTED, NO_IDENTITY) are NOT
exceptions; they are returned as ``Outcome`` values. Everything in this
module terminates the current negotiation attempt.
"""

from typing import Optional


class StyxAuthError(Exception):
    """Base exception for all styxauth errors."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class CommunicationError(StyxAuthError):
    """
    Communication with the peer failed.

    Raised on transport I/O errors and on peer data that cannot be
    parsed. Distinct from a FAILED outcome, which means the peer proved
    the wrong thing.
    """

    pass


class MalformedDataError(CommunicationError):
    """Peer sent data that does not parse as a protocol message."""

    pass


class ChannelClosedError(CommunicationError):
    """The channel was closed while the exchange was in progress."""

    def __init__(self, message: str = "Channel closed by peer") -> None:
        super().__init__(message)


class NegotiationTimeout(CommunicationError):
    """The driver abandoned the negotiation after its overall timeout."""

    pass


class ConfigurationError(StyxAuthError):
    """
    Invalid or incomplete configuration.

    Raised for missing configuration attributes, bad driver settings and
    unknown protocol names.
    """

    pass


class DelegationError(ConfigurationError):
    """
    A DELEGATED hand-off cannot be followed.

    The successor protocol is not registered, closes a cycle in the
    delegation chain or makes the chain too long.
    """

    pass


class StateError(StyxAuthError):
    """
    Operation not valid in the handler's current state.

    Examples: initializing twice, mixing channel takeover with blob
    exchange, processing after a fault.
    """

    pass


class ChannelBusyError(StateError):
    """Another handler already holds the channel."""

    pass


class InvariantViolation(StyxAuthError):
    """
    A lifecycle invariant was violated.

    Indicates a handler bug, e.g. reporting SUCCESS without a credential.
    """

    pass


class CryptoError(StyxAuthError):
    """A cryptographic operation failed."""

    pass
