"""
styxauth Handler Lifecycle

State machine tracking one protocol handler through a negotiation attempt:

    UNINIT -> INITIALIZED -> EXCHANGING* -> SUCCEEDED | FAILED
                                          | NOT_SUPPORTED | NO_IDENTITY
                                          | DELEGATED | ABORTED

Every processing step of a handler is fed in as an event. Invariants
guard the credential contract: a credential exists exactly when the
handler succeeded.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple

import attrs

from styxauth.core.state_machine import StateMachineBase, TransitionEntry
from styxauth.core.types import ProcessingMode


class HandlerPhase(Enum):
    """Lifecycle states of a protocol handler."""

    UNINIT = auto()
    INITIALIZED = auto()
    EXCHANGING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    NOT_SUPPORTED = auto()
    NO_IDENTITY = auto()
    DELEGATED = auto()
    ABORTED = auto()

    @property
    def is_final(self) -> bool:
        return self not in (
            HandlerPhase.UNINIT,
            HandlerPhase.INITIALIZED,
            HandlerPhase.EXCHANGING,
        )


class ExchangePath(Enum):
    """How handshake data reaches the peer."""

    CHANNEL = auto()
    BLOB = auto()


@attrs.define(frozen=True, slots=True)
class HandlerContext:
    """
    Lifecycle context of one handler.

    Holds names only; secret material never enters the context.
    """

    protocol: str = ""
    role: str = ""
    init_path: str = ""
    init_ok: bool = False
    identity_name: str = ""
    exchange_path: Optional[ExchangePath] = None
    steps: int = 0
    credential_user: Optional[str] = None
    info: str = ""
    delegated_to: str = ""


# =============================================================================
# EVENTS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Initialized:
    """One of the two initialization paths completed."""

    role: str
    init_path: str
    success: bool
    identity_name: str = ""


@attrs.define(frozen=True, slots=True)
class Step:
    """Non-terminal processing result (NEED_DATA, PENDING_DATA, ...)."""

    mode: ProcessingMode
    path: ExchangePath
    identity_name: str = ""


@attrs.define(frozen=True, slots=True)
class Succeeded:
    credential_user: str
    identity_name: str
    path: ExchangePath


@attrs.define(frozen=True, slots=True)
class Failed:
    info: str
    path: ExchangePath


@attrs.define(frozen=True, slots=True)
class NotSupported:
    path: ExchangePath


@attrs.define(frozen=True, slots=True)
class NoIdentity:
    path: ExchangePath


@attrs.define(frozen=True, slots=True)
class Delegated:
    successor: str
    path: ExchangePath


@attrs.define(frozen=True, slots=True)
class Aborted:
    """A communication fault ended the attempt."""

    reason: str


# =============================================================================
# STATE MACHINE
# =============================================================================


_ACTIVE = (HandlerPhase.INITIALIZED, HandlerPhase.EXCHANGING)


@attrs.define
class HandlerLifecycle(StateMachineBase[HandlerPhase, Any, HandlerContext]):
    """Lifecycle state machine of a single handler instance."""

    def __attrs_post_init__(self) -> None:
        self.add_invariant("credential_iff_success", credential_iff_success)
        self.add_invariant("identity_bound_on_success", identity_bound_on_success)
        self.add_invariant("info_on_failure", info_on_failure)
        self.add_invariant("no_self_delegation", no_self_delegation)

    @classmethod
    def create(cls, protocol: str) -> HandlerLifecycle:
        return cls(
            _state=HandlerPhase.UNINIT,
            _context=HandlerContext(protocol=protocol),
        )

    def initial_state(self) -> HandlerPhase:
        return HandlerPhase.UNINIT

    def transition_table(
        self,
    ) -> Dict[Tuple[HandlerPhase, type], TransitionEntry]:
        table: Dict[Tuple[HandlerPhase, type], TransitionEntry] = {
            (HandlerPhase.UNINIT, Initialized): (
                HandlerPhase.INITIALIZED,
                self._handle_initialized,
            ),
            # Processing without any initialization
            (HandlerPhase.UNINIT, NoIdentity): (
                HandlerPhase.NO_IDENTITY,
                self._handle_no_identity,
            ),
        }
        for phase in _ACTIVE:
            table[(phase, Step)] = (HandlerPhase.EXCHANGING, self._handle_step)
            table[(phase, Succeeded)] = (HandlerPhase.SUCCEEDED, self._handle_succeeded)
            table[(phase, Failed)] = (HandlerPhase.FAILED, self._handle_failed)
            table[(phase, NotSupported)] = (
                HandlerPhase.NOT_SUPPORTED,
                self._handle_not_supported,
            )
            table[(phase, NoIdentity)] = (HandlerPhase.NO_IDENTITY, self._handle_no_identity)
            table[(phase, Delegated)] = (HandlerPhase.DELEGATED, self._handle_delegated)
        # A delivery failure after the last message supersedes the outcome.
        for phase in HandlerPhase:
            if phase not in (HandlerPhase.UNINIT, HandlerPhase.ABORTED):
                table[(phase, Aborted)] = (HandlerPhase.ABORTED, self._handle_aborted)
        return table

    @staticmethod
    def _handle_initialized(event: Initialized, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(
            ctx,
            role=event.role,
            init_path=event.init_path,
            init_ok=event.success,
            identity_name=event.identity_name,
        )

    @staticmethod
    def _handle_step(event: Step, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(
            ctx,
            exchange_path=event.path,
            steps=ctx.steps + 1,
            identity_name=event.identity_name or ctx.identity_name,
        )

    @staticmethod
    def _handle_succeeded(event: Succeeded, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(
            ctx,
            exchange_path=event.path,
            steps=ctx.steps + 1,
            credential_user=event.credential_user,
            identity_name=event.identity_name or ctx.identity_name,
            info="",
        )

    @staticmethod
    def _handle_failed(event: Failed, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(
            ctx,
            exchange_path=event.path,
            steps=ctx.steps + 1,
            info=event.info,
        )

    @staticmethod
    def _handle_not_supported(event: NotSupported, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(ctx, exchange_path=event.path, steps=ctx.steps + 1)

    @staticmethod
    def _handle_no_identity(event: NoIdentity, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(ctx, exchange_path=event.path, steps=ctx.steps + 1)

    @staticmethod
    def _handle_delegated(event: Delegated, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(
            ctx,
            exchange_path=event.path,
            steps=ctx.steps + 1,
            delegated_to=event.successor,
            info=event.successor,
        )

    @staticmethod
    def _handle_aborted(event: Aborted, ctx: HandlerContext) -> HandlerContext:
        return attrs.evolve(ctx, info=event.reason, credential_user=None)


# =============================================================================
# INVARIANTS
# =============================================================================


def credential_iff_success(state: HandlerPhase, ctx: HandlerContext) -> bool:
    """A credential exists exactly in SUCCEEDED."""
    return (state is HandlerPhase.SUCCEEDED) == (ctx.credential_user is not None)


def identity_bound_on_success(state: HandlerPhase, ctx: HandlerContext) -> bool:
    if state is HandlerPhase.SUCCEEDED:
        return bool(ctx.identity_name)
    return True


def info_on_failure(state: HandlerPhase, ctx: HandlerContext) -> bool:
    if state in (HandlerPhase.FAILED, HandlerPhase.DELEGATED):
        return bool(ctx.info)
    return True


def no_self_delegation(state: HandlerPhase, ctx: HandlerContext) -> bool:
    if state is HandlerPhase.DELEGATED:
        return ctx.delegated_to != ctx.protocol
    return True
