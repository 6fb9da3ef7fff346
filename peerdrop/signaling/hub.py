"""
Connection Hub

Tracks connected relay participants and delivers JSON to them.
"""

import logging
import uuid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ConnectionHub:
    """
    Maps participant ids to live connections.

    A connection is anything with an async ``send_json(dict)`` method
    (a FastAPI ``WebSocket`` in production).
    """

    def __init__(self):
        self._connections: Dict[str, Any] = {}

    def register(self, connection: Any, participant_id: Optional[str] = None) -> str:
        """Register a connection and return its participant id."""
        participant_id = participant_id or str(uuid.uuid4())
        self._connections[participant_id] = connection
        logger.info(f"Participant connected: {participant_id[:8]}")
        return participant_id

    def unregister(self, participant_id: str):
        if self._connections.pop(participant_id, None) is not None:
            logger.info(f"Participant disconnected: {participant_id[:8]}")

    def is_connected(self, participant_id: str) -> bool:
        return participant_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def send(self, participant_id: str, message: dict) -> bool:
        """
        Deliver a message to one participant.

        Returns:
            True if delivered, False if the participant is gone or the
            send failed
        """
        connection = self._connections.get(participant_id)
        if connection is None:
            logger.warning(f"Participant {participant_id[:8]} not connected, "
                           f"dropping {message.get('event')}")
            return False

        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Send to {participant_id[:8]} failed: {e}")
            return False
