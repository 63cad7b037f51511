"""
styxauth Exchange Loop

The step rules that turn processing outcomes into transport actions.

    NEED_DATA     -> receive from peer, call the consume operation
    PENDING_DATA  -> call the produce operation, send the result
    CONTINUE      -> perform the opposite operation to the last one
    WAIT(n)       -> sleep n seconds on the clock, retry the same operation
    NO_MORE_DATA  -> call produce once more to resolve the outcome
    DELEGATED     -> stop; the caller chains the successor handler
    terminal      -> stop

Used by the negotiation driver for blob exchange and by handlers that
take over a channel directly.
"""

from __future__ import annotations

import time
from enum import Enum, auto
from typing import Callable, Optional, Protocol

import attrs
import structlog

from styxauth.core.blob import Blob
from styxauth.core.exceptions import CommunicationError, NegotiationTimeout
from styxauth.core.types import Outcome, ProcessingMode

logger = structlog.get_logger()

StepFn = Callable[[Blob], Outcome]


class Clock(Protocol):
    """Time source used to honour WAIT and timeouts."""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation of ``Clock``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class BlobTransport(Protocol):
    """Moves blob payloads to and from the peer."""

    def send(self, data: bytes) -> None: ...

    def receive(self, max_size: int) -> bytes: ...


class Direction(Enum):
    PRODUCE = auto()
    CONSUME = auto()

    @property
    def opposite(self) -> Direction:
        if self is Direction.PRODUCE:
            return Direction.CONSUME
        return Direction.PRODUCE


@attrs.define(frozen=True)
class ExchangeLimits:
    """Bounds applied to one exchange loop run."""

    blob_size: int = attrs.field(default=8192, validator=attrs.validators.ge(16))
    max_steps: int = attrs.field(default=64, validator=attrs.validators.ge(1))
    deadline: Optional[float] = None


def next_direction(outcome: Outcome, last: Direction) -> Direction:
    """Operation to invoke after a non-final ``outcome``."""
    mode = outcome.mode
    if mode is ProcessingMode.NEED_DATA:
        return Direction.CONSUME
    if mode in (ProcessingMode.PENDING_DATA, ProcessingMode.NO_MORE_DATA):
        return Direction.PRODUCE
    if mode is ProcessingMode.CONTINUE:
        return last.opposite
    if mode is ProcessingMode.WAIT:
        return last
    raise ValueError(f"{mode.name} does not continue the exchange")


def run_exchange(
    produce: StepFn,
    consume: StepFn,
    transport: BlobTransport,
    *,
    initiate: bool,
    clock: Clock,
    limits: ExchangeLimits = ExchangeLimits(),
    protocol: str = "",
) -> Outcome:
    """
    Drive one handler until it reports a terminal or DELEGATED outcome.

    Args:
        produce: Fills a blob with data for the peer
        consume: Processes a blob received from the peer
        transport: Peer connection
        initiate: True if this side sends the first message
        clock: Time source for WAIT and the deadline
        limits: Blob size, step budget and optional deadline

    Returns:
        The final outcome (terminal or DELEGATED)

    Raises:
        CommunicationError: transport failure or step budget exhausted
        NegotiationTimeout: deadline passed (also while waiting)
    """
    log = logger.bind(protocol=protocol)
    direction = Direction.PRODUCE if initiate else Direction.CONSUME

    for step in range(limits.max_steps):
        _check_deadline(clock, limits.deadline, 0)

        if direction is Direction.PRODUCE:
            blob = Blob(limits.blob_size)
            outcome = produce(blob)
            if len(blob):
                transport.send(blob.getvalue())
        else:
            data = transport.receive(limits.blob_size)
            outcome = consume(Blob.wrap(data))

        log.debug(
            "exchange_step",
            step=step,
            direction=direction.name,
            outcome=str(outcome),
        )

        if outcome.is_terminal or outcome.mode is ProcessingMode.DELEGATED:
            return outcome

        if outcome.mode is ProcessingMode.WAIT:
            _check_deadline(clock, limits.deadline, outcome.wait_seconds)
            clock.sleep(outcome.wait_seconds)

        direction = next_direction(outcome, direction)

    raise CommunicationError(
        f"Exchange did not complete within {limits.max_steps} steps"
    )


def _check_deadline(clock: Clock, deadline: Optional[float], pending: float) -> None:
    if deadline is None:
        return
    if clock.monotonic() + pending > deadline:
        raise NegotiationTimeout("Negotiation timed out")
