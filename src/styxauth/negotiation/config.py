"""
styxauth Negotiation Configuration

Driver settings with validation. ``from_mapping`` accepts the string
attributes produced by an external configuration loader.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import attrs
from attrs import field, validators

from styxauth.core.exceptions import ConfigurationError


def _positive_or_none(instance: Any, attribute: attrs.Attribute, value: Optional[float]) -> None:
    if value is not None and value <= 0:
        raise ValueError(f"{attribute.name} must be positive, got {value}")


@attrs.define(frozen=True, slots=True)
class NegotiationConfig:
    """
    Negotiation driver configuration.

    Attributes:
        blob_size: Capacity of each blob handed to a handler
        max_steps: Step budget per handler
        max_delegations: Longest allowed DELEGATED chain
        timeout_seconds: Overall negotiation timeout (None = no timeout)
    """

    blob_size: int = field(default=8192, validator=[validators.instance_of(int), validators.ge(16)])
    max_steps: int = field(default=64, validator=[validators.instance_of(int), validators.ge(1)])
    max_delegations: int = field(
        default=4, validator=[validators.instance_of(int), validators.ge(0)]
    )
    timeout_seconds: Optional[float] = field(default=None, validator=_positive_or_none)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> NegotiationConfig:
        """
        Build a config from string attributes.

        Unknown keys are ignored.

        Raises:
            ConfigurationError: a value does not parse or is out of range
        """
        kwargs: dict = {}
        try:
            for key in ("blob_size", "max_steps", "max_delegations"):
                if key in values:
                    kwargs[key] = int(values[key])
            if values.get("timeout_seconds") not in (None, ""):
                kwargs["timeout_seconds"] = float(values["timeout_seconds"])
            return cls(**kwargs)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid negotiation configuration: {e}") from e
