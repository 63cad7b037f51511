"""
styxauth Transport Module

Byte-stream channels the authentication layer runs on.
"""

from styxauth.transport.channel import (
    Channel,
    ChannelTransport,
    MemoryChannel,
    SocketChannel,
)

__all__ = [
    "Channel",
    "ChannelTransport",
    "MemoryChannel",
    "SocketChannel",
]
