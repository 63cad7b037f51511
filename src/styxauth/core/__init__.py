"""
styxauth Core Module

Protocol-independent building blocks shared by every handler.

Components:
- types: Identity, Credential, ProcessingMode, Outcome
- blob: Bounded handshake buffer
- state_machine / lifecycle: Handler lifecycle with invariant checking
- handler: AuthProtocolHandler contract and GenericHandler base
- registry: Protocol name -> handler class
- exchange: Step rules of the exchange loop
- crypto: Cryptographic operations wrapper
- exceptions: Custom exception types
"""

from styxauth.core.types import (
    Credential,
    Identity,
    Outcome,
    ProcessingMode,
    Role,
)
from styxauth.core.blob import Blob, ByteOrder
from styxauth.core.state_machine import StateMachineBase, Transition
from styxauth.core.lifecycle import HandlerLifecycle, HandlerPhase
from styxauth.core.handler import AuthProtocolHandler, GenericHandler
from styxauth.core.exchange import Clock, ExchangeLimits, SystemClock, run_exchange
from styxauth.core.exceptions import (
    StyxAuthError,
    CommunicationError,
    MalformedDataError,
    ChannelClosedError,
    NegotiationTimeout,
    ConfigurationError,
    DelegationError,
    StateError,
    ChannelBusyError,
    InvariantViolation,
    CryptoError,
)

__all__ = [
    # Types
    "Credential",
    "Identity",
    "Outcome",
    "ProcessingMode",
    "Role",
    "Blob",
    "ByteOrder",
    # State Machine
    "StateMachineBase",
    "Transition",
    "HandlerLifecycle",
    "HandlerPhase",
    # Handlers
    "AuthProtocolHandler",
    "GenericHandler",
    # Exchange
    "Clock",
    "SystemClock",
    "ExchangeLimits",
    "run_exchange",
    # Exceptions
    "StyxAuthError",
    "CommunicationError",
    "MalformedDataError",
    "ChannelClosedError",
    "NegotiationTimeout",
    "ConfigurationError",
    "DelegationError",
    "StateError",
    "ChannelBusyError",
    "InvariantViolation",
    "CryptoError",
]
