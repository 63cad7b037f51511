"""
Pytest configuration and shared fixtures for styxauth tests.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Tuple

import attrs
import pytest

from styxauth.core.blob import Blob
from styxauth.core.exchange import Direction, next_direction
from styxauth.core.registry import HandlerRegistry, default_registry
from styxauth.core.types import Outcome, ProcessingMode
from styxauth.inferno.types import InfernoIdentity, InfernoSigner
from styxauth.negotiation.identities import IdentityStore
from styxauth.p9sk.types import P9skIdentity


# =============================================================================
# CLOCK
# =============================================================================


@attrs.define
class FakeClock:
    """Clock that only advances when slept on."""

    now: float = 1000.0
    sleeps: List[float] = attrs.Factory(list)

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# REGISTRY AND IDENTITY FIXTURES
# =============================================================================


@pytest.fixture
def registry() -> HandlerRegistry:
    return default_registry()


@pytest.fixture
def test_password() -> str:
    return "wonderland"


@pytest.fixture
def alice(test_password: str) -> P9skIdentity:
    """p9sk1 client identity."""
    return P9skIdentity.create("alice", test_password, domain="styx")


@pytest.fixture
def server_store(alice: P9skIdentity) -> IdentityStore:
    """Server side store knowing alice's key."""
    store = IdentityStore()
    store.add_key(alice)
    return store


@pytest.fixture
def signer() -> InfernoSigner:
    return InfernoSigner.generate("styx.example")


@pytest.fixture
def inferno_client(signer: InfernoSigner) -> InfernoIdentity:
    return signer.issue("alice")


@pytest.fixture
def inferno_server(signer: InfernoSigner) -> InfernoIdentity:
    return signer.issue("fileserver")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


@attrs.define
class _Side:
    handler: Any
    direction: Direction
    inbound: bytearray = attrs.Factory(bytearray)
    outcomes: List[Outcome] = attrs.Factory(list)
    done: bool = False


def drive_pair(
    client: Any,
    server: Any,
    blob_size: int = 8192,
    max_steps: int = 200,
) -> Tuple[Outcome, Outcome]:
    """
    Run two handlers against each other through blobs, single threaded.

    Applies the driver step rules to both sides; WAIT is retried
    immediately. Returns the last outcome of each side.
    """
    sides = [
        _Side(client, Direction.PRODUCE if client.initiates else Direction.CONSUME),
        _Side(server, Direction.PRODUCE if server.initiates else Direction.CONSUME),
    ]
    for _ in range(max_steps):
        progressed = False
        for side, peer in ((sides[0], sides[1]), (sides[1], sides[0])):
            if side.done:
                continue
            if side.direction is Direction.PRODUCE:
                blob = Blob(blob_size)
                outcome = side.handler.get_data_for_peer(blob)
                peer.inbound.extend(blob.getvalue())
            else:
                if not side.inbound:
                    continue
                data = bytes(side.inbound[:blob_size])
                del side.inbound[:blob_size]
                outcome = side.handler.handle_peer_data(Blob.wrap(data))
            progressed = True
            side.outcomes.append(outcome)
            if outcome.is_terminal or outcome.mode is ProcessingMode.DELEGATED:
                side.done = True
            else:
                side.direction = next_direction(outcome, side.direction)
        if all(side.done for side in sides) or not progressed:
            break
    return sides[0].outcomes[-1], sides[1].outcomes[-1]


def run_concurrently(*calls: Callable[[], Any]) -> List[Any]:
    """Run callables in threads; return results in order (re-raises)."""
    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(call) for call in calls]
        return [future.result(timeout=30) for future in futures]


# =============================================================================
# PYTEST MARKERS
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
