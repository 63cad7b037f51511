"""
styxauth Channel Transport

Bidirectional byte-stream connections consumed by the authentication layer.

Provides:
- Channel: abstract contract with an exclusive takeover lock
- SocketChannel: socket-backed channel (TCP or socketpair)
- MemoryChannel: connected in-process endpoints
- ChannelTransport: adapter used by the blob exchange loop

I/O failures surface as CommunicationError, never as raw OSError.
"""

from __future__ import annotations

import socket
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Tuple

import attrs
import structlog

from styxauth.core.exceptions import (
    ChannelBusyError,
    ChannelClosedError,
    CommunicationError,
)

logger = structlog.get_logger()

DEFAULT_READ_SIZE = 8192


# =============================================================================
# CHANNEL CONTRACT
# =============================================================================


@attrs.define
class Channel(ABC):
    """
    Byte-stream connection between two peers.

    While a handler holds the channel through ``takeover()``, no other
    component may take it over; the lock is released when the context
    exits, including on errors.
    """

    _takeover_lock: Any = attrs.field(factory=threading.Lock, init=False, repr=False)
    _owner: Optional[str] = attrs.field(default=None, init=False)

    @abstractmethod
    def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        """
        Block until at least one byte is available; return up to ``size``.

        Raises:
            ChannelClosedError: peer closed the stream
            CommunicationError: I/O failure
        """
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Write all of ``data``; raises CommunicationError on failure."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @property
    def owner(self) -> Optional[str]:
        """Name of the handler currently holding the channel (if any)."""
        return self._owner

    @contextmanager
    def takeover(self, owner: str) -> Iterator[Channel]:
        """
        Hold the channel exclusively for the duration of the block.

        Raises:
            ChannelBusyError: another owner already holds the channel
        """
        if not self._takeover_lock.acquire(blocking=False):
            raise ChannelBusyError(
                f"Channel already taken over by {self._owner or 'another handler'}"
            )
        self._owner = owner
        logger.debug("channel_takeover_acquired", owner=owner)
        try:
            yield self
        finally:
            self._owner = None
            self._takeover_lock.release()
            logger.debug("channel_takeover_released", owner=owner)

    def read_exact(self, size: int) -> bytes:
        """Read exactly ``size`` bytes."""
        chunks = []
        needed = size
        while needed > 0:
            chunk = self.read(needed)
            chunks.append(chunk)
            needed -= len(chunk)
        return b"".join(chunks)


# =============================================================================
# SOCKET CHANNEL
# =============================================================================


@attrs.define
class SocketChannel(Channel):
    """
    Channel over a connected stream socket.

    Example:
        a, b = SocketChannel.pair()
        a.write(b"hello")
        b.read()  # b"hello"
    """

    sock: socket.socket = attrs.field(kw_only=True)
    timeout: Optional[float] = attrs.field(default=30.0, kw_only=True)
    _closed: bool = attrs.field(default=False, init=False)
    _logger: Any = attrs.field(factory=lambda: structlog.get_logger(), init=False, repr=False)

    def __attrs_post_init__(self) -> None:
        self.sock.settimeout(self.timeout)

    @classmethod
    def connect(cls, host: str, port: int, timeout: Optional[float] = 30.0) -> SocketChannel:
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise CommunicationError(f"Failed to connect to {host}:{port}: {e}") from e
        logger.debug("channel_connected", host=host, port=port)
        return cls(sock=sock, timeout=timeout)

    @classmethod
    def pair(cls, timeout: Optional[float] = 30.0) -> Tuple[SocketChannel, SocketChannel]:
        """Create two connected channels (``socket.socketpair``)."""
        left, right = socket.socketpair()
        return cls(sock=left, timeout=timeout), cls(sock=right, timeout=timeout)

    def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        try:
            data = self.sock.recv(size)
        except socket.timeout as e:
            raise CommunicationError("Timed out waiting for peer data") from e
        except OSError as e:
            raise CommunicationError(f"Channel read failed: {e}") from e
        if not data:
            raise ChannelClosedError()
        return data

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        try:
            self.sock.sendall(data)
        except OSError as e:
            raise CommunicationError(f"Channel write failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.close()
        except OSError as e:
            self._logger.debug("channel_close_error", error=str(e))

    @property
    def closed(self) -> bool:
        return self._closed


# =============================================================================
# MEMORY CHANNEL
# =============================================================================


@attrs.define
class _Pipe:
    """One direction of a MemoryChannel pair."""

    buffer: bytearray = attrs.Factory(bytearray)
    closed: bool = False
    cond: Any = attrs.Factory(threading.Condition)


@attrs.define
class MemoryChannel(Channel):
    """
    In-process channel endpoint; see ``MemoryChannel.pair()``.

    Reads block until data arrives, the peer closes, or ``timeout``
    elapses.
    """

    _inbound: _Pipe = attrs.field(kw_only=True, alias="_inbound")
    _outbound: _Pipe = attrs.field(kw_only=True, alias="_outbound")
    timeout: Optional[float] = attrs.field(default=10.0, kw_only=True)
    _closed: bool = attrs.field(default=False, init=False)

    @classmethod
    def pair(cls, timeout: Optional[float] = 10.0) -> Tuple[MemoryChannel, MemoryChannel]:
        a_to_b, b_to_a = _Pipe(), _Pipe()
        left = cls(_inbound=b_to_a, _outbound=a_to_b, timeout=timeout)
        right = cls(_inbound=a_to_b, _outbound=b_to_a, timeout=timeout)
        return left, right

    def read(self, size: int = DEFAULT_READ_SIZE) -> bytes:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        pipe = self._inbound
        with pipe.cond:
            ready = pipe.cond.wait_for(
                lambda: pipe.buffer or pipe.closed,
                timeout=self.timeout,
            )
            if not ready:
                raise CommunicationError("Timed out waiting for peer data")
            if not pipe.buffer:
                raise ChannelClosedError()
            data = bytes(pipe.buffer[:size])
            del pipe.buffer[:size]
            return data

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ChannelClosedError("Channel is closed")
        pipe = self._outbound
        with pipe.cond:
            if pipe.closed:
                raise ChannelClosedError("Peer closed the channel")
            pipe.buffer.extend(data)
            pipe.cond.notify_all()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for pipe in (self._inbound, self._outbound):
            with pipe.cond:
                pipe.closed = True
                pipe.cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed


# =============================================================================
# BLOB TRANSPORT ADAPTER
# =============================================================================


@attrs.define
class ChannelTransport:
    """
    Carries blob payloads over a channel for the exchange loop.

    Payloads are written as-is; every handler frames its own messages,
    so a read returns whatever bytes have arrived (up to ``max_size``).
    """

    channel: Channel

    def send(self, data: bytes) -> None:
        self.channel.write(data)

    def receive(self, max_size: int) -> bytes:
        return self.channel.read(max_size)
