"""
Unit tests for styxauth.transport.channel module.

Tests channel I/O, failure mapping and exclusive takeover.
"""

import threading

import pytest

from styxauth.core.exceptions import (
    ChannelBusyError,
    ChannelClosedError,
    CommunicationError,
)
from styxauth.transport.channel import ChannelTransport, MemoryChannel, SocketChannel


@pytest.fixture(params=["memory", "socket"])
def channel_pair(request):
    if request.param == "memory":
        left, right = MemoryChannel.pair(timeout=2.0)
    else:
        left, right = SocketChannel.pair(timeout=2.0)
    yield left, right
    left.close()
    right.close()


class TestChannelIO:
    """Tests for reading and writing."""

    def test_round_trip(self, channel_pair):
        left, right = channel_pair
        left.write(b"hello")
        assert right.read_exact(5) == b"hello"

    def test_read_bounded(self, channel_pair):
        left, right = channel_pair
        left.write(b"abcdef")
        assert len(right.read(3)) <= 3

    def test_peer_close(self, channel_pair):
        left, right = channel_pair
        left.close()
        with pytest.raises(ChannelClosedError):
            right.read()

    def test_write_after_close(self, channel_pair):
        left, _ = channel_pair
        left.close()
        assert left.closed
        with pytest.raises(ChannelClosedError):
            left.write(b"x")

    def test_read_timeout(self):
        left, right = MemoryChannel.pair(timeout=0.05)
        with pytest.raises(CommunicationError, match="Timed out"):
            right.read()

    def test_closed_error_is_communication_error(self):
        assert issubclass(ChannelClosedError, CommunicationError)

    def test_connect_failure(self):
        with pytest.raises(CommunicationError):
            SocketChannel.connect("127.0.0.1", 1, timeout=0.5)


class TestTakeover:
    """Tests for exclusive channel takeover."""

    def test_takeover_sets_owner(self):
        channel, _ = MemoryChannel.pair()
        with channel.takeover("inferno") as held:
            assert held is channel
            assert channel.owner == "inferno"
        assert channel.owner is None

    def test_second_takeover_rejected(self):
        channel, _ = MemoryChannel.pair()
        with channel.takeover("inferno"):
            with pytest.raises(ChannelBusyError, match="inferno"):
                with channel.takeover("p9sk1"):
                    pass

    def test_concurrent_takeover_rejected(self):
        channel, _ = MemoryChannel.pair()
        entered = threading.Event()
        release = threading.Event()
        errors = []

        def hold():
            with channel.takeover("first"):
                entered.set()
                release.wait(2)

        holder = threading.Thread(target=hold)
        holder.start()
        entered.wait(2)
        try:
            with channel.takeover("second"):
                pass
        except ChannelBusyError as e:
            errors.append(e)
        finally:
            release.set()
            holder.join()

        assert len(errors) == 1

    def test_takeover_released_on_error(self):
        channel, _ = MemoryChannel.pair()
        with pytest.raises(CommunicationError):
            with channel.takeover("inferno"):
                raise CommunicationError("broken")
        with channel.takeover("p9sk1"):
            assert channel.owner == "p9sk1"


class TestChannelTransport:
    def test_send_receive(self):
        left, right = MemoryChannel.pair(timeout=1.0)
        ChannelTransport(left).send(b"payload")
        assert ChannelTransport(right).receive(4) == b"payl"
        assert ChannelTransport(right).receive(16) == b"oad"
