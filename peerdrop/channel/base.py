"""
Peer Channel Capability

Design Decision: Capability, not inheritance
============================================
The transfer core never depends on a concrete transport. Anything with the
``PeerTransport`` shape can carry a session: the bundled TCP transport, an
in-memory pair in tests, or a bridge to another point-to-point stack.

The transport reports what happens to the connection through the
``on_state`` callback passed to ``bind``; the adapter decides what the
report means for the channel's state.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from ..errors import PeerDropError


class ChannelState(Enum):
    NEW = "new"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


class Role(Enum):
    """Which side of the transfer this participant is."""
    SENDER = "sender"
    RECEIVER = "receiver"


# Signaling payloads are forwarded through the relay untouched
SignalFunc = Callable[[str, Dict[str, Any]], Awaitable[None]]
FrameCallback = Callable[[bytes], None]
StateCallback = Callable[[ChannelState, Optional[PeerDropError]], None]


class PeerTransport(Protocol):
    """A direct, ordered, message-oriented connection to one peer."""

    def bind(self, on_frame: FrameCallback, on_state: StateCallback) -> None:
        """Register where inbound frames and connection events go."""

    async def negotiate(self, role: Role, signal: SignalFunc) -> None:
        """
        Establish the connection, exchanging setup payloads via ``signal``.

        Reports ``OPEN`` through ``on_state`` on success; raises (or reports
        ``FAILED``) otherwise.
        """

    async def handle_signal(self, kind: str, payload: Dict[str, Any]) -> None:
        """Feed a setup payload received from the peer through the relay."""

    async def send_frame(self, frame: bytes) -> None:
        """Send one frame; returns once the transport has buffer space again."""

    async def close(self) -> None:
        """Tear the connection down locally."""
