"""
styxauth Handler Registry

Maps protocol names to handler classes. A fresh handler instance is
created for every negotiation attempt; instances are never shared.
"""

from __future__ import annotations

from typing import Any, Dict, List, Type

import attrs
import structlog
from returns.result import Failure, Result, Success

from styxauth.core.exceptions import ConfigurationError
from styxauth.core.handler import GenericHandler

logger = structlog.get_logger()

HandlerClass = Type[GenericHandler]


@attrs.define
class HandlerRegistry:
    """
    Name -> handler class table.

    Example:
        registry = HandlerRegistry()
        registry.register("p9sk1", P9sk1Handler)
        handler = registry.create("p9sk1", identities=store)
    """

    _factories: Dict[str, HandlerClass] = attrs.field(factory=dict, alias="_factories")

    def register(self, name: str, handler_class: HandlerClass, replace: bool = False) -> None:
        """
        Register ``handler_class`` under ``name``.

        Raises:
            ConfigurationError: name is taken (and ``replace`` is False) or
                does not match the class's PROTOCOL_NAME
        """
        if handler_class.PROTOCOL_NAME != name:
            raise ConfigurationError(
                f"Handler {handler_class.__name__} implements "
                f"'{handler_class.PROTOCOL_NAME}', not '{name}'"
            )
        if name in self._factories and not replace:
            raise ConfigurationError(f"Protocol '{name}' is already registered")
        self._factories[name] = handler_class
        logger.debug("protocol_registered", protocol=name, handler=handler_class.__name__)

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> List[str]:
        """Registered protocol names, in registration order."""
        return list(self._factories)

    def lookup(self, name: str) -> Result[HandlerClass, str]:
        handler_class = self._factories.get(name)
        if handler_class is None:
            return Failure(f"Unknown authentication protocol '{name}'")
        return Success(handler_class)

    def create(self, name: str, **kwargs: Any) -> GenericHandler:
        """
        Create a new handler for ``name``.

        Raises:
            ConfigurationError: no handler is registered under ``name``
        """
        result = self.lookup(name)
        if isinstance(result, Failure):
            raise ConfigurationError(result.failure())
        return result.unwrap()(**kwargs)

    def __contains__(self, name: object) -> bool:
        return name in self._factories


def default_registry() -> HandlerRegistry:
    """Registry holding the built-in protocols."""
    from styxauth.inferno.handler import InfernoHandler
    from styxauth.p9any.handler import P9anyHandler
    from styxauth.p9sk.handler import P9sk1Handler, P9sk2Handler

    registry = HandlerRegistry()
    for handler_class in (P9anyHandler, P9sk1Handler, P9sk2Handler, InfernoHandler):
        registry.register(handler_class.PROTOCOL_NAME, handler_class)
    return registry
