"""
styxauth State Machine Base

Table-driven state machine used for handler lifecycles.

A machine is described by a table mapping ``(state, event type)`` to the
next state and a pure context updater. Each event is applied in three
stages:

    lookup    -> no entry:            Failure (nothing changes)
    update    -> updater raised:      Failure (nothing changes)
    invariants-> any invariant false: InvariantViolation (nothing changes)

Only then is the transition recorded and committed. The recorded history
is what tests and diagnostics inspect; snapshots hold attrs fields only,
so secrets kept out of events and contexts never reach a trace.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

import attrs
import structlog
from returns.result import Failure, Result, Success

from styxauth.core.exceptions import InvariantViolation

logger = structlog.get_logger()


S = TypeVar("S", bound=Enum)
E = TypeVar("E")
C = TypeVar("C")

Snapshot = Dict[str, Any]
InvariantFn = Callable[[S, Any], bool]
TransitionEntry = Tuple[S, Callable[[Any, Any], Any]]
TransitionTable = Dict[Tuple[S, type], TransitionEntry]


# =============================================================================
# HISTORY
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Transition(Generic[S, E]):
    """One committed transition."""

    from_state: S
    event_type: str
    to_state: S
    timestamp: datetime
    context_snapshot: Snapshot = attrs.Factory(dict)
    event_data: Snapshot = attrs.Factory(dict)

    def to_dict(self) -> Snapshot:
        return {
            "from_state": self.from_state.name,
            "event_type": self.event_type,
            "to_state": self.to_state.name,
            "timestamp": self.timestamp.isoformat(),
            "context_snapshot": self.context_snapshot,
            "event_data": self.event_data,
        }


def _snapshot_value(inst: type, field: attrs.Attribute, value: Any) -> Any:  # noqa: ARG001
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return f"<bytes:{len(value)}>"
    if attrs.has(type(value)):
        return f"<{type(value).__name__}>"
    return value


def snapshot(obj: Any) -> Snapshot:
    """JSON friendly view of the public attrs fields of ``obj``."""
    if not attrs.has(type(obj)):
        return {"type": type(obj).__name__}
    return attrs.asdict(
        obj,
        recurse=False,
        filter=lambda attribute, _: not attribute.name.startswith("_"),
        value_serializer=_snapshot_value,
    )


# =============================================================================
# MACHINE
# =============================================================================


@attrs.define
class StateMachineBase(ABC, Generic[S, E, C]):
    """
    Base class for table-driven machines.

    Subclasses provide ``initial_state()`` and ``transition_table()``;
    the table is built once per instance.

    Example:
        class DoorMachine(StateMachineBase[Door, Any, DoorContext]):
            def initial_state(self) -> Door:
                return Door.CLOSED

            def transition_table(self) -> TransitionTable:
                return {(Door.CLOSED, Opened): (Door.OPEN, self._on_open)}

            @staticmethod
            def _on_open(event: Opened, ctx: DoorContext) -> DoorContext:
                return attrs.evolve(ctx, opened_by=event.who)
    """

    _state: S = attrs.field(alias="_state")
    _context: C = attrs.field(alias="_context")
    _history: List[Transition[S, E]] = attrs.field(factory=list, alias="_history")
    _invariants: List[Tuple[str, InvariantFn]] = attrs.field(factory=list, alias="_invariants")
    _table: Optional[TransitionTable] = attrs.field(default=None, init=False, repr=False)
    _logger: Any = attrs.field(factory=lambda: structlog.get_logger(), alias="_logger")

    @abstractmethod
    def initial_state(self) -> S:
        ...

    @abstractmethod
    def transition_table(self) -> TransitionTable:
        """Map ``(state, event type)`` to ``(next state, context updater)``."""
        ...

    @property
    def state(self) -> S:
        return self._state

    @property
    def context(self) -> C:
        return self._context

    def add_invariant(self, name: str, invariant: InvariantFn) -> None:
        """Check ``invariant(next_state, next_context)`` before every commit."""
        self._invariants.append((name, invariant))

    def can_accept(self, event_type: type) -> bool:
        return (self._state, event_type) in self._entries()

    def process_event(self, event: E) -> Result[S, str]:
        """
        Apply ``event``.

        Returns:
            Success(new_state), or Failure(reason) when the event is not
            accepted in the current state

        Raises:
            InvariantViolation: the transition would break an invariant
        """
        event_name = type(event).__name__
        entry = self._entries().get((self._state, type(event)))
        if entry is None:
            self._logger.warning(
                "invalid_transition",
                current_state=self._state.name,
                event_type=event_name,
            )
            return Failure(f"No transition for state {self._state.name} with event {event_name}")

        next_state, updater = entry
        try:
            next_context = updater(event, self._context)
        except (TypeError, ValueError, AttributeError) as e:
            self._logger.error(
                "context_update_failed",
                current_state=self._state.name,
                event_type=event_name,
                error=str(e),
            )
            return Failure(f"Context update failed: {e}")

        self._check_invariants(next_state, next_context)
        self._commit(event, next_state, next_context)
        return Success(next_state)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def get_trace(self) -> List[Transition[S, E]]:
        return list(self._history)

    def state_sequence(self) -> List[str]:
        """Visited state names, initial state first."""
        if not self._history:
            return [self._state.name]
        return [self._history[0].from_state.name] + [t.to_state.name for t in self._history]

    def export_trace_json(self) -> str:
        return json.dumps(
            {
                "initial_state": self.initial_state().name,
                "final_state": self._state.name,
                "states": self.state_sequence(),
                "transitions": [t.to_dict() for t in self._history],
            },
            indent=2,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _entries(self) -> TransitionTable:
        if self._table is None:
            self._table = self.transition_table()
        return self._table

    def _check_invariants(self, next_state: S, next_context: C) -> None:
        for name, invariant in self._invariants:
            if invariant(next_state, next_context):
                continue
            self._logger.error(
                "invariant_violated",
                invariant=name,
                from_state=self._state.name,
                to_state=next_state.name,
            )
            raise InvariantViolation(f"Invariant '{name}' violated")

    def _commit(self, event: E, next_state: S, next_context: C) -> None:
        self._history.append(
            Transition(
                from_state=self._state,
                event_type=type(event).__name__,
                to_state=next_state,
                timestamp=datetime.now(timezone.utc),
                context_snapshot=snapshot(next_context),
                event_data=snapshot(event),
            )
        )
        self._logger.debug(
            "state_transition",
            from_state=self._state.name,
            to_state=next_state.name,
            event_type=type(event).__name__,
        )
        self._state = next_state
        self._context = next_context


def verify_trace(
    trace: List[Transition],
    allowed_transitions: Dict[Tuple[str, str], str],
) -> List[str]:
    """
    Compare a trace with ``{(from_state, event_type): to_state}``.

    Returns:
        One message per transition not in the table (empty if valid)
    """
    errors = []
    for index, t in enumerate(trace):
        expected = allowed_transitions.get((t.from_state.name, t.event_type))
        if expected is None:
            errors.append(
                f"Transition {index}: {t.from_state.name} --[{t.event_type}]--> "
                f"{t.to_state.name} is not allowed"
            )
        elif expected != t.to_state.name:
            errors.append(
                f"Transition {index}: {t.from_state.name} --[{t.event_type}]--> "
                f"expected {expected}, got {t.to_state.name}"
            )
    return errors
