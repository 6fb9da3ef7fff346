"""
Signaling Messages

Pydantic models for the JSON events carried over the relay WebSocket.
Wire names are camelCase (what browser peers send); Python attributes are
snake_case.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool


# Event names
CREATE_SESSION = "create-session"
JOIN_SESSION = "join-session"
LEAVE_SESSION = "leave-session"
SIGNAL = "signal"
TRANSFER_OFFER = "transfer-offer"
TRANSFER_RESPONSE = "transfer-response"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
ERROR = "error"

SignalType = Literal['offer', 'answer', 'ice-candidate']


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class JoinSessionMessage(_WireModel):
    code: str = Field(min_length=1)


class SignalMessage(_WireModel):
    """Opaque channel-setup payload; never interpreted by the relay."""
    type: SignalType
    payload: Any = None


class TransferOfferMessage(_WireModel):
    file_name: str = Field(alias='fileName', min_length=1)
    file_size: int = Field(alias='fileSize', gt=0)
    mime_type: str = Field(alias='mimeType', default='application/octet-stream')


class TransferResponseMessage(_WireModel):
    accepted: StrictBool
    reason: Optional[str] = None


def reply(event: str, success: bool = True, **fields) -> dict:
    """Build a reply envelope for ``event``."""
    return {'event': event, 'success': success, **fields}


def error_reply(event: str, reason: str, message: str = "") -> dict:
    return reply(event, success=False, error=reason, message=message or reason)
