"""
Peer Channel Adapter

Wraps a ``PeerTransport`` and owns the channel state:

```
new ──open()──> connecting ──> open ──> closed
                    │            │
                    └──> failed <┘
failed / closed ──open()──> connecting   (retry)
```

- ``open(role)`` only starts negotiation; the outcome arrives through
  ``on_state_change`` listeners (or ``wait_settled``), never as a return
  value.
- ``send`` is valid only while open and raises ``ChannelNotOpen``
  otherwise. Inbound frames are decoded and delivered only while open.
- The adapter never retries. A ``failed`` channel is reported upward and
  the transfer state machine decides what to do.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..errors import ChannelFailed, ChannelNotOpen, MalformedMessage, PeerDropError
from ..transfer.protocol import ChannelMessage, MessageType
from .base import ChannelState, PeerTransport, Role, SignalFunc

logger = logging.getLogger(__name__)

MessageListener = Callable[[ChannelMessage], None]
StateListener = Callable[[ChannelState, Optional[PeerDropError]], None]
ErrorListener = Callable[[PeerDropError], None]

SETTLED_STATES = (ChannelState.OPEN, ChannelState.FAILED, ChannelState.CLOSED)

# transport report -> states it is accepted from
_ALLOWED_FROM = {
    ChannelState.OPEN: (ChannelState.CONNECTING,),
    ChannelState.FAILED: (ChannelState.CONNECTING, ChannelState.OPEN),
    ChannelState.CLOSED: (ChannelState.OPEN,),
}


class PeerChannelAdapter:
    """The peer channel as seen by the transfer core."""

    def __init__(self, transport: PeerTransport, signal: Optional[SignalFunc] = None):
        """
        Args:
            transport: Concrete point-to-point transport
            signal: Sends setup payloads to the peer (normally via the relay)
        """
        self.transport = transport
        self._signal = signal
        self.state = ChannelState.NEW
        self.role: Optional[Role] = None
        self.last_error: Optional[PeerDropError] = None

        self._message_listeners: List[MessageListener] = []
        self._state_listeners: List[StateListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._negotiation: Optional[asyncio.Task] = None
        self._settled = asyncio.Event()

        transport.bind(self._on_frame, self._on_transport_state)

    @property
    def is_open(self) -> bool:
        return self.state == ChannelState.OPEN

    # === Listeners ===

    def on_message(self, listener: MessageListener) -> MessageListener:
        self._message_listeners.append(listener)
        return listener

    def on_state_change(self, listener: StateListener) -> StateListener:
        self._state_listeners.append(listener)
        return listener

    def on_error(self, listener: ErrorListener) -> ErrorListener:
        self._error_listeners.append(listener)
        return listener

    # === Lifecycle ===

    def open(self, role: Role):
        """Begin negotiation as ``role``; completion is reported by state callbacks."""
        if self.state in (ChannelState.CONNECTING, ChannelState.OPEN):
            logger.warning(f"open() ignored: channel already {self.state.value}")
            return

        self.role = role
        self.last_error = None
        self._settled.clear()
        self._set_state(ChannelState.CONNECTING)
        self._negotiation = asyncio.create_task(self._negotiate(role))

    async def _negotiate(self, role: Role):
        try:
            await self.transport.negotiate(role, self._send_signal)
        except asyncio.CancelledError:
            raise
        except PeerDropError as e:
            self._on_transport_state(ChannelState.FAILED, e)
        except (OSError, asyncio.TimeoutError) as e:
            self._on_transport_state(ChannelState.FAILED, ChannelFailed(f"Negotiation failed: {e!r}"))

    async def _send_signal(self, kind: str, payload: Dict[str, Any]):
        if self._signal is None:
            raise ChannelFailed("No signaling path to the peer")
        await self._signal(kind, payload)

    async def handle_signal(self, kind: str, payload: Dict[str, Any]):
        """
        Deliver a setup payload relayed from the peer.

        Payloads arriving before a retry's ``open()`` are still handed to
        the transport, which keeps the latest offer for the next attempt.
        """
        if self.state == ChannelState.OPEN:
            logger.debug(f"Dropping '{kind}' signal on an open channel")
            return
        await self.transport.handle_signal(kind, payload)

    async def wait_settled(self, timeout: Optional[float] = None) -> ChannelState:
        """
        Wait until negotiation ends in open, failed or closed.

        Returns:
            The settled state (still ``connecting`` if the timeout expired)
        """
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.state

    async def close(self):
        """Close locally. Listeners see ``closed``."""
        if self._negotiation is not None and not self._negotiation.done():
            self._negotiation.cancel()
            await asyncio.gather(self._negotiation, return_exceptions=True)
        self._negotiation = None

        await self.transport.close()
        if self.state not in (ChannelState.NEW, ChannelState.CLOSED):
            self._set_state(ChannelState.CLOSED)

    # === Sending ===

    async def send(self, message: ChannelMessage):
        if self.state != ChannelState.OPEN:
            raise ChannelNotOpen(f"Cannot send {message.type.value} while {self.state.value}")
        try:
            await self.transport.send_frame(message.to_bytes())
        except (ConnectionError, OSError) as e:
            error = ChannelFailed(f"Send failed: {e!r}")
            self._on_transport_state(ChannelState.FAILED, error)
            raise error from e

    async def send_control(self, msg_type: MessageType, body: Dict[str, Any]):
        await self.send(ChannelMessage.control(msg_type, body))

    # === Transport callbacks ===

    def _on_transport_state(self, state: ChannelState, error: Optional[PeerDropError] = None):
        if state == ChannelState.CLOSED and self.state == ChannelState.CONNECTING:
            # Peer went away mid-negotiation
            state = ChannelState.FAILED
            error = error or ChannelFailed("Connection closed during negotiation")

        if self.state not in _ALLOWED_FROM.get(state, ()):
            logger.debug(f"Ignoring transport report {state.value} while {self.state.value}")
            return

        if state == ChannelState.FAILED:
            self.last_error = error or ChannelFailed()
            logger.warning(f"Peer channel failed: {self.last_error.message}")
        self._set_state(state, error)

    def _on_frame(self, frame: bytes):
        if self.state != ChannelState.OPEN:
            logger.debug(f"Dropping frame received while {self.state.value}")
            return

        try:
            message = ChannelMessage.from_bytes(frame)
        except MalformedMessage as e:
            logger.warning(f"Undecodable frame: {e.message}")
            for listener in list(self._error_listeners):
                listener(e)
            return

        for listener in list(self._message_listeners):
            listener(message)

    def _set_state(self, state: ChannelState, error: Optional[PeerDropError] = None):
        previous, self.state = self.state, state
        logger.debug(f"Peer channel {previous.value} -> {state.value}")
        if state in SETTLED_STATES:
            self._settled.set()
        for listener in list(self._state_listeners):
            listener(state, error)
