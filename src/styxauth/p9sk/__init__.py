"""
styxauth p9sk Module

Shared-key mutual authentication (p9sk1, p9sk2).
"""

from styxauth.p9sk.types import P9skIdentity
from styxauth.p9sk.handler import P9sk1Handler, P9sk2Handler, P9skHandler

__all__ = [
    "P9skIdentity",
    "P9skHandler",
    "P9sk1Handler",
    "P9sk2Handler",
]
