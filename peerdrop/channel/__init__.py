"""
Channel Module - Direct Peer Connection

The adapter owns channel state over any ``PeerTransport``; ``TcpTransport``
is the bundled transport.
"""

from .base import ChannelState, Role, PeerTransport
from .adapter import PeerChannelAdapter
from .tcp import TcpTransport

__all__ = [
    'ChannelState',
    'Role',
    'PeerTransport',
    'PeerChannelAdapter',
    'TcpTransport',
]
