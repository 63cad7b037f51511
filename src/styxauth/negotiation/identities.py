"""
styxauth Identity Store

Identities a party can authenticate as, plus the keyring of peer secrets
a server uses to verify clients.

Own identities are keyed by ``proto@domain``; keyring entries by
``(proto, domain, user)``. The store is shared read-mostly between
concurrent negotiations; all access is lock protected and the stored
identities are immutable.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

import attrs
import structlog

from styxauth.core.exceptions import ConfigurationError
from styxauth.core.types import Identity

if TYPE_CHECKING:
    from styxauth.core.registry import HandlerRegistry

logger = structlog.get_logger()

SCOPE_IDENTITY = "identity"
SCOPE_KEYRING = "keyring"

KeyringKey = Tuple[str, str, str]


@attrs.define
class IdentityStore:
    """
    Thread-safe lookup of own identities and peer keys.

    Example:
        store = IdentityStore()
        store.add(P9skIdentity(name="bootes", auth_protocol="p9sk1",
                               domain="plan9", password="secret"))
        store.find("p9sk1", "plan9")
    """

    _identities: Dict[str, Identity] = attrs.field(factory=dict, alias="_identities")
    _keyring: Dict[KeyringKey, Identity] = attrs.field(factory=dict, alias="_keyring")
    _lock: Any = attrs.field(factory=threading.RLock, init=False, repr=False)

    # -------------------------------------------------------------------------
    # Own identities
    # -------------------------------------------------------------------------

    def add(self, identity: Identity) -> None:
        """Add (or replace) the identity used for ``identity.spec``."""
        with self._lock:
            self._identities[identity.spec] = identity
        logger.debug("identity_added", spec=identity.spec, name=identity.name)

    def find(self, protocol: str, domain: str = "") -> Optional[Identity]:
        """
        Find the own identity for ``protocol`` in ``domain``.

        Tries ``proto@domain`` first, then the domain-less ``proto``.
        Without a domain, any identity of ``protocol`` matches.
        """
        with self._lock:
            if domain:
                identity = self._identities.get(f"{protocol}@{domain}")
                if identity is not None:
                    return identity
            identity = self._identities.get(protocol)
            if identity is not None or domain:
                return identity
            for candidate in self._identities.values():
                if candidate.auth_protocol == protocol:
                    return candidate
            return None

    def identities(self) -> List[Identity]:
        """Snapshot of the own identities, in insertion order."""
        with self._lock:
            return list(self._identities.values())

    # -------------------------------------------------------------------------
    # Keyring
    # -------------------------------------------------------------------------

    def add_key(self, identity: Identity) -> None:
        """Add a peer identity (secret) used to verify that peer."""
        key = (identity.auth_protocol, identity.domain, identity.name)
        with self._lock:
            self._keyring[key] = identity
        logger.debug(
            "keyring_entry_added",
            protocol=identity.auth_protocol,
            domain=identity.domain,
            user=identity.name,
        )

    def find_key(self, protocol: str, user: str, domain: str = "") -> Optional[Identity]:
        with self._lock:
            entry = self._keyring.get((protocol, domain, user))
            if entry is None and domain:
                entry = self._keyring.get((protocol, "", user))
            return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities) + len(self._keyring)

    # -------------------------------------------------------------------------
    # Declarative loading
    # -------------------------------------------------------------------------

    def load_records(
        self,
        records: Iterable[Mapping[str, str]],
        registry: HandlerRegistry,
    ) -> int:
        """
        Load configuration records through handler declarative init.

        Each record names its handler with ``proto``; ``scope`` selects
        ``identity`` (default) or ``keyring``. The remaining attributes are
        interpreted by the handler.

        Returns:
            Number of records loaded

        Raises:
            ConfigurationError: unknown protocol, unknown scope or a record
                the handler rejects
        """
        count = 0
        for index, record in enumerate(records):
            protocol = (record.get("proto") or "").strip()
            if not protocol:
                raise ConfigurationError(f"Record {index}: missing 'proto' attribute")
            scope = (record.get("scope") or SCOPE_IDENTITY).strip()
            if scope not in (SCOPE_IDENTITY, SCOPE_KEYRING):
                raise ConfigurationError(f"Record {index}: unknown scope '{scope}'")

            handler = registry.create(protocol)
            if not handler.init_from_config(record) or handler.identity is None:
                raise ConfigurationError(
                    f"Record {index}: invalid '{protocol}' configuration: {handler.info}"
                )

            if scope == SCOPE_KEYRING:
                self.add_key(handler.identity)
            else:
                self.add(handler.identity)
            count += 1

        logger.info("identity_records_loaded", count=count)
        return count
