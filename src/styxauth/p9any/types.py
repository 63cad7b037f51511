"""
styxauth p9any Types

Identity and wire constants of the p9any negotiation.
"""

from __future__ import annotations

from typing import Iterable, Tuple

import attrs
from attrs import field, validators

from styxauth.core.types import Identity


PROTOCOL_NAME = "p9any"
DEFAULT_VERSION = "v.2"
ACK = "OK"

# Upper bound for one NUL-terminated p9any message.
MAX_MESSAGE = 4096


def _to_offers(value: Iterable[str]) -> Tuple[str, ...]:
    if isinstance(value, str):
        value = value.split()
    return tuple(value)


@attrs.define(frozen=True, slots=True)
class P9anyIdentity(Identity):
    """
    Identity of a p9any endpoint.

    ``domains`` lists ``proto@domain`` offers. A server offers them to
    the client; a client restricts its choice to them (empty = accept any
    offer it holds an identity for).
    """

    version: str = field(default=DEFAULT_VERSION, validator=validators.min_len(1))
    domains: Tuple[str, ...] = field(factory=tuple, converter=_to_offers)

    @domains.validator
    def _check_domains(self, attribute: attrs.Attribute, value: Tuple[str, ...]) -> None:
        for offer in value:
            if "@" not in offer or offer.startswith("@"):
                raise ValueError(f"Offer must be 'proto@domain', got {offer!r}")

    @classmethod
    def create(
        cls,
        domains: Iterable[str],
        version: str = DEFAULT_VERSION,
        name: str = PROTOCOL_NAME,
    ) -> P9anyIdentity:
        return cls(name=name, auth_protocol=PROTOCOL_NAME, version=version, domains=domains)

    @property
    def offers(self) -> Tuple[Tuple[str, str], ...]:
        """``(proto, domain)`` pairs, p9any itself excluded."""
        pairs = (split_offer(offer) for offer in self.domains)
        return tuple(pair for pair in pairs if pair[0] != PROTOCOL_NAME)


def split_offer(offer: str) -> Tuple[str, str]:
    """Split ``proto@domain`` into its parts."""
    proto, _, domain = offer.partition("@")
    return proto, domain
