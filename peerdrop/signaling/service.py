"""
Signaling Service

Transport-independent dispatcher for relay events. The WebSocket endpoint
feeds every inbound JSON object through ``handle`` and sends back whatever
reply it returns; forwarded messages go out through the hub.

Events:
```
create-session                       -> {event, success, code}
join-session      {code}             -> {event, success, code} | error
leave-session                        -> {event, success}
signal            {type, payload}    -> forwarded to peer with {from}
transfer-offer    {fileName, ...}    -> forwarded to peer with {from}
transfer-response {accepted, reason} -> forwarded to peer with {from}
```
Peer notifications: ``peer-joined`` (to the sender when a receiver joins),
``peer-left`` (to whoever remains when the other side leaves).

A ``requestId`` on an inbound event is copied onto its reply so a client
can match replies to concurrent requests.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from ..errors import MalformedMessage, PeerDropError, InvalidOffer
from ..session import SessionDirectory
from . import messages as m
from .hub import ConnectionHub
from .relay import SignalRelay

logger = logging.getLogger(__name__)


class SignalingService:
    """Session pairing plus signal forwarding for connected participants."""

    def __init__(self, directory: SessionDirectory, hub: Optional[ConnectionHub] = None):
        self.directory = directory
        self.hub = hub or ConnectionHub()
        self.relay = SignalRelay(directory, self.hub.send)

        self._handlers = {
            m.CREATE_SESSION: self._create_session,
            m.JOIN_SESSION: self._join_session,
            m.LEAVE_SESSION: self._leave_session,
            m.SIGNAL: self._signal,
            m.TRANSFER_OFFER: self._transfer_offer,
            m.TRANSFER_RESPONSE: self._transfer_response,
        }

    # === Connection lifecycle ===

    def connect(self, connection: Any) -> str:
        """Register a new connection; returns its participant id."""
        return self.hub.register(connection)

    async def disconnect(self, participant_id: str):
        """Drop a participant, leaving any session it held."""
        await self._leave_all(participant_id)
        self.hub.unregister(participant_id)

    # === Dispatch ===

    async def handle(self, participant_id: str, message: Any) -> Optional[dict]:
        """
        Handle one inbound event.

        Returns:
            A reply for the originating participant, or None
        """
        reply = await self._dispatch(participant_id, message)
        if reply is not None and isinstance(message, dict) and 'requestId' in message:
            reply['requestId'] = message['requestId']
        return reply

    async def _dispatch(self, participant_id: str, message: Any) -> Optional[dict]:
        if not isinstance(message, dict) or not isinstance(message.get('event'), str):
            logger.warning(f"Malformed event from {participant_id[:8]}: {message!r}")
            return m.error_reply(m.ERROR, MalformedMessage.reason, "Missing event name")

        event = message['event']
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning(f"Unknown event {event!r} from {participant_id[:8]}")
            return m.error_reply(event, MalformedMessage.reason, f"Unknown event: {event}")

        try:
            return await handler(participant_id, message)
        except PeerDropError as e:
            logger.info(f"{event} from {participant_id[:8]} failed: {e.reason}")
            return m.error_reply(event, e.reason, e.message)
        except ValidationError as e:
            logger.warning(f"Invalid {event} from {participant_id[:8]}: {e.errors()}")
            reason = InvalidOffer.reason if event == m.TRANSFER_OFFER else MalformedMessage.reason
            return m.error_reply(event, reason, f"Invalid {event} message")

    # === Handlers ===

    async def _create_session(self, participant_id: str, message: dict) -> dict:
        await self._leave_all(participant_id)
        code = self.directory.create_session(participant_id)
        return m.reply(m.CREATE_SESSION, code=code)

    async def _join_session(self, participant_id: str, message: dict) -> dict:
        request = m.JoinSessionMessage.model_validate(message)
        code = request.code.strip()

        current = self.directory.session_for(participant_id)
        if current is not None and current.code != code:
            await self._leave_all(participant_id)

        session = self.directory.join_session(code, participant_id)
        if session.sender_id:
            await self.hub.send(session.sender_id, {
                'event': m.PEER_JOINED,
                'code': code,
                'peerId': participant_id,
            })
        return m.reply(m.JOIN_SESSION, code=code)

    async def _leave_session(self, participant_id: str, message: dict) -> dict:
        await self._leave_all(participant_id)
        return m.reply(m.LEAVE_SESSION)

    async def _signal(self, participant_id: str, message: dict) -> None:
        m.SignalMessage.model_validate(message)
        await self._forward(participant_id, message)

    async def _transfer_offer(self, participant_id: str, message: dict) -> None:
        offer = m.TransferOfferMessage.model_validate(message)
        logger.info(f"Transfer offer: {offer.file_name} ({offer.file_size:,} bytes)")
        await self._forward(participant_id, message)

    async def _transfer_response(self, participant_id: str, message: dict) -> None:
        m.TransferResponseMessage.model_validate(message)
        await self._forward(participant_id, message)

    # === Helpers ===

    async def _forward(self, participant_id: str, message: dict):
        session = self.directory.session_for(participant_id)
        if session is None:
            logger.warning(f"{message['event']} from {participant_id[:8]} outside any session")
            return
        await self.relay.relay(session.code, participant_id, message)

    async def _leave_all(self, participant_id: str):
        session = self.directory.session_for(participant_id)
        while session is not None:
            remaining = self.directory.leave(session.code, participant_id)
            if remaining:
                await self.hub.send(remaining, {'event': m.PEER_LEFT, 'code': session.code})
            session = self.directory.session_for(participant_id)

    def get_stats(self) -> dict:
        return {
            'connected_clients': len(self.hub),
            **self.directory.get_stats(),
            **self.relay.get_stats(),
        }
