"""
styxauth inferno Module

Certificate based mutual authentication (Inferno), usable both over
blobs and by taking over a channel.
"""

from styxauth.inferno.types import (
    InfernoCertificate,
    InfernoIdentity,
    InfernoSigner,
    issue_identity,
    looks_like_auth_message,
)
from styxauth.inferno.handler import InfernoHandler

__all__ = [
    "InfernoCertificate",
    "InfernoIdentity",
    "InfernoSigner",
    "InfernoHandler",
    "issue_identity",
    "looks_like_auth_message",
]
