"""
styxauth Negotiation Module

Drives handlers to a final outcome and follows delegations.

Components:
- identities: IdentityStore (own identities and peer keyring)
- config: NegotiationConfig
- driver: Negotiator, NegotiationResult
"""

from styxauth.negotiation.config import NegotiationConfig
from styxauth.negotiation.identities import IdentityStore
from styxauth.negotiation.driver import NegotiationResult, Negotiator

__all__ = [
    "IdentityStore",
    "NegotiationConfig",
    "NegotiationResult",
    "Negotiator",
]
