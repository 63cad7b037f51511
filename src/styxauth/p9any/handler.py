"""
styxauth p9any Handler

Negotiates which authentication protocol to run, then delegates to it.

    S->C: "v.2 proto@authdom proto@authdom ..."
    C->S: "proto dom"
    S->C: "OK"

Each message is a NUL-terminated UTF-8 string. The client waits for the
final OK so it never starts the chosen protocol before the server is
ready. Both sides end with DELEGATED; ``info`` names the chosen protocol
and ``delegation_domain`` its auth domain.

p9any runs only inside the blob exchange and never takes over a channel.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import ClassVar, Mapping, Optional, Tuple, Type

import attrs

from styxauth.core.exceptions import ConfigurationError, MalformedDataError
from styxauth.core.handler import GenericHandler, require_attribute
from styxauth.core.types import Identity, Outcome, ProcessingMode
from styxauth.p9any.types import (
    ACK,
    DEFAULT_VERSION,
    MAX_MESSAGE,
    PROTOCOL_NAME,
    P9anyIdentity,
    split_offer,
)


class P9anyState(Enum):
    OFFER = auto()      # server: send offers / client: expect offers
    SELECT = auto()     # server: expect choice / client: send choice
    ACK = auto()        # server: send OK / client: expect OK
    DONE = auto()


@attrs.define
class P9anyHandler(GenericHandler):
    """p9any protocol negotiator."""

    PROTOCOL_NAME: ClassVar[str] = PROTOCOL_NAME
    IDENTITY_TYPE: ClassVar[Type[Identity]] = P9anyIdentity

    _state: P9anyState = attrs.field(default=P9anyState.OFFER, init=False)
    _selected: Optional[Tuple[str, str]] = attrs.field(default=None, init=False)

    @property
    def initiates(self) -> bool:
        return self.is_server

    @property
    def delegation_domain(self) -> str:
        return self._selected[1] if self._selected else ""

    @property
    def selected(self) -> Optional[Tuple[str, str]]:
        """Chosen ``(proto, domain)`` once agreed."""
        return self._selected

    def _can_run_unbound(self) -> bool:
        # A client picks from the identities it holds; a server must know
        # what to offer.
        return not self.is_server and self.identities is not None

    def _identity_from_config(self, attributes: Mapping[str, str]) -> Identity:
        domains = require_attribute(attributes, "domains")
        try:
            return P9anyIdentity.create(
                domains=domains,
                version=attributes.get("version") or DEFAULT_VERSION,
                name=attributes.get("name") or PROTOCOL_NAME,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid p9any domains: {e}") from e

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _frame_length(self, buffer: bytes) -> Optional[int]:
        end = buffer.find(b"\x00")
        if end >= 0:
            return end + 1
        if len(buffer) > MAX_MESSAGE:
            raise MalformedDataError("p9any message is not NUL-terminated")
        return None

    def _next_message(self) -> Tuple[bytes, Outcome]:
        if self.is_server:
            if self._state is P9anyState.OFFER:
                self._state = P9anyState.SELECT
                return _encode(self._offer_line()), Outcome(ProcessingMode.NEED_DATA)
            if self._state is P9anyState.ACK:
                self._state = P9anyState.DONE
                return _encode(ACK), self._delegate(self._choice()[0])
        elif self._state is P9anyState.SELECT:
            self._state = P9anyState.ACK
            proto, domain = self._choice()
            return _encode(f"{proto} {domain}"), Outcome(ProcessingMode.NEED_DATA)

        return b"", self._fail(f"no p9any message to send in state {self._state.name}")

    def _handle_message(self, frame: bytes) -> Outcome:
        text = frame.rstrip(b"\x00").decode("utf-8", errors="replace").split("\n")[0]
        if self.is_server:
            if self._state is P9anyState.SELECT:
                return self._handle_choice(text)
        elif self._state is P9anyState.OFFER:
            return self._handle_offers(text)
        elif self._state is P9anyState.ACK:
            if text != ACK:
                return self._fail(f"server did not acknowledge the choice: {text!r}")
            self._state = P9anyState.DONE
            return self._delegate(self._choice()[0])

        return self._fail(f"unexpected p9any message in state {self._state.name}")

    def _offer_line(self) -> str:
        identity = self._required(self._p9any_identity(), "p9any offer list")
        offers = [f"{proto}@{domain}" for proto, domain in identity.offers]
        return " ".join([identity.version] + offers)

    def _handle_offers(self, text: str) -> Outcome:
        parts = text.split()
        if not parts:
            raise MalformedDataError("empty p9any offer")
        version, offers = parts[0], parts[1:]

        own = self._p9any_identity()
        expected = own.version if own else DEFAULT_VERSION
        if version != expected:
            return self._fail(f"unsupported p9any version {version!r}")

        for offer in offers:
            if "@" not in offer:
                raise MalformedDataError(f"malformed p9any offer {offer!r}")
            if self._can_use(offer):
                self._selected = split_offer(offer)
                self._state = P9anyState.SELECT
                self._logger.debug("p9any_selected", choice=offer)
                return Outcome(ProcessingMode.CONTINUE)

        return self._fail(f"no common protocol in {' '.join(offers) or 'empty offer'}")

    def _handle_choice(self, text: str) -> Outcome:
        proto, _, domain = text.partition(" ")
        if not proto:
            raise MalformedDataError("empty p9any choice")
        identity = self._required(self._p9any_identity(), "p9any offer list")
        if (proto, domain) not in identity.offers:
            return self._fail(f"client chose '{proto}@{domain}', which was not offered")
        self._selected = (proto, domain)
        self._state = P9anyState.ACK
        return Outcome(ProcessingMode.CONTINUE)

    def _can_use(self, offer: str) -> bool:
        proto, domain = split_offer(offer)
        if proto == PROTOCOL_NAME:
            return False
        own = self._p9any_identity()
        if own is not None and own.domains and offer not in own.domains:
            return False
        if self.identities is not None:
            return self.identities.find(proto, domain) is not None
        return own is not None and bool(own.domains)

    def _p9any_identity(self) -> Optional[P9anyIdentity]:
        identity = self._identity
        if isinstance(identity, P9anyIdentity):
            return identity
        return None

    def _choice(self) -> Tuple[str, str]:
        return self._required(self._selected, "agreed protocol")


def _encode(text: str) -> bytes:
    return text.encode("utf-8") + b"\x00"
