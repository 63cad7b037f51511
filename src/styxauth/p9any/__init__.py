"""
styxauth p9any Module

Negotiation of the authentication protocol to run (Plan 9 p9any).
"""

from styxauth.p9any.types import P9anyIdentity
from styxauth.p9any.handler import P9anyHandler

__all__ = [
    "P9anyIdentity",
    "P9anyHandler",
]
