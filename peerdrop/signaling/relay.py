"""
Signal Relay

Stateless pass-through of signaling payloads between the two participants
of a session. Payload contents (offer/answer/candidate, transfer offers)
are opaque here: the message is forwarded verbatim with the sender's
identity attached.
"""

import logging
from typing import Awaitable, Callable

from ..session import SessionDirectory

logger = logging.getLogger(__name__)

# (participant_id, message) -> delivered?
Deliver = Callable[[str, dict], Awaitable[bool]]


class SignalRelay:
    """Forwards messages to the other side of a session."""

    def __init__(self, directory: SessionDirectory, deliver: Deliver):
        self.directory = directory
        self._deliver = deliver

        # Statistics
        self.messages_relayed = 0
        self.messages_dropped = 0

    async def relay(self, code: str, from_participant: str, message: dict) -> bool:
        """
        Forward ``message`` from ``from_participant`` to its counterpart.

        A missing session or counterpart is logged and reported as False;
        the originating peer sees no reply and times out.
        """
        session = self.directory.get(code)
        if session is None:
            logger.warning(f"Relay: session {code} not found, dropping {message.get('event')}")
            self.messages_dropped += 1
            return False

        target = session.other(from_participant)
        if target is None:
            logger.warning(f"Relay: no peer in session {code} for "
                           f"{from_participant[:8]}, dropping {message.get('event')}")
            self.messages_dropped += 1
            return False

        self.directory.touch(code)
        delivered = await self._deliver(target, {**message, 'from': from_participant})
        if delivered:
            self.messages_relayed += 1
        else:
            self.messages_dropped += 1
        return delivered

    def get_stats(self) -> dict:
        return {
            'messages_relayed': self.messages_relayed,
            'messages_dropped': self.messages_dropped,
        }
