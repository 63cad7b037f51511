"""
styxauth - Pluggable Authentication for 9P/Styx Services

Negotiates how two peers of a 9P/Styx file service authenticate each
other before a session is granted. Each authentication protocol is a
handler driven through a small set of processing outcomes; a negotiation
driver runs handlers over a channel, following delegations from the
p9any negotiator to the protocol it selected.

Supported Protocols:
- p9any (protocol negotiation)
- p9sk1 / p9sk2 (shared key challenge/response)
- inferno (certificate based, supports channel takeover)

Example Usage:
    from styxauth import IdentityStore, Negotiator, P9skIdentity, SocketChannel

    store = IdentityStore()
    store.add(P9skIdentity.create("alice", "secret", domain="styx"))
    negotiator = Negotiator(identities=store)

    channel = SocketChannel.connect("fs.example.com", 564)
    result = negotiator.negotiate_channel("p9sk1", channel, as_server=False)
    if result.success:
        print(f"Authenticated server {result.credential.user}")
"""

from styxauth.core.types import Credential, Identity, Outcome, ProcessingMode, Role
from styxauth.core.blob import Blob
from styxauth.core.handler import AuthProtocolHandler, GenericHandler
from styxauth.core.registry import HandlerRegistry, default_registry
from styxauth.negotiation.config import NegotiationConfig
from styxauth.negotiation.driver import NegotiationResult, Negotiator
from styxauth.negotiation.identities import IdentityStore
from styxauth.transport.channel import Channel, MemoryChannel, SocketChannel
from styxauth.p9any.types import P9anyIdentity
from styxauth.p9sk.types import P9skIdentity
from styxauth.inferno.types import InfernoIdentity, InfernoSigner, issue_identity

__version__ = "0.1.0"

__all__ = [
    # Main API
    "Negotiator",
    "NegotiationResult",
    "NegotiationConfig",
    "IdentityStore",
    # Handlers
    "AuthProtocolHandler",
    "GenericHandler",
    "HandlerRegistry",
    "default_registry",
    # Types
    "Identity",
    "Credential",
    "Outcome",
    "ProcessingMode",
    "Role",
    "Blob",
    # Channels
    "Channel",
    "SocketChannel",
    "MemoryChannel",
    # Protocol identities
    "P9anyIdentity",
    "P9skIdentity",
    "InfernoIdentity",
    "InfernoSigner",
    "issue_identity",
    # Metadata
    "__version__",
]
