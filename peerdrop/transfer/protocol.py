"""
Peer Channel Message Protocol

Design Decision: Message Encoding
=================================

Options Considered:
1. JSON only, chunks as base64
   - Simple, but +33% on every byte of file data
2. Separate channels for control and data
   - Needs two channels and cross-channel ordering
3. One framed message: JSON header + raw binary payload
   - Control and data share one ordered channel
   - Payload stays binary

Decision: Header-length-prefixed JSON header + binary payload

Message Format:
```
+-------------------+----------------+----------------+
| Header len (4B)   | Header (JSON)  | Data (binary)  |
+-------------------+----------------+----------------+

Header JSON:
{
    "type": "file-info" | "chunk" | "transfer-offer" | "transfer-response",
    ...type specific fields...
}
```

A transfer on the channel is one ``file-info`` followed by ``totalChunks``
``chunk`` messages, each tagged with its index so the receiver can place it
regardless of arrival order. Whether a chunk is compressed is stated in its
header; it is never guessed from content.
"""

import json
import struct
from enum import Enum
from typing import Any, Dict
from dataclasses import dataclass, field

from ..errors import MalformedMessage

# Sanity limit on the JSON header
MAX_HEADER_SIZE = 64 * 1024


class MessageType(Enum):
    """Peer channel message types."""
    # Handshake
    TRANSFER_OFFER = "transfer-offer"
    TRANSFER_RESPONSE = "transfer-response"

    # Transfer
    FILE_INFO = "file-info"
    CHUNK = "chunk"


@dataclass
class ChannelMessage:
    """A message carried over the peer channel."""
    type: MessageType
    headers: Dict[str, Any] = field(default_factory=dict)
    data: bytes = b''

    def to_bytes(self) -> bytes:
        """Serialize message to one frame."""
        header_bytes = json.dumps({'type': self.type.value, **self.headers}).encode('utf-8')
        return struct.pack('>I', len(header_bytes)) + header_bytes + self.data

    @classmethod
    def from_bytes(cls, frame: bytes) -> 'ChannelMessage':
        """
        Parse one frame.

        Raises:
            MalformedMessage: truncated frame, bad JSON, unknown type, or
                a chunk header with missing/mistyped fields
        """
        if len(frame) < 4:
            raise MalformedMessage("Frame shorter than header length prefix")

        header_length = struct.unpack('>I', frame[:4])[0]
        if header_length > MAX_HEADER_SIZE or 4 + header_length > len(frame):
            raise MalformedMessage(f"Bad header length: {header_length}")

        try:
            headers = json.loads(frame[4:4 + header_length].decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedMessage(f"Undecodable header: {e}") from e

        if not isinstance(headers, dict):
            raise MalformedMessage("Header is not an object")

        try:
            msg_type = MessageType(headers.pop('type', None))
        except ValueError:
            raise MalformedMessage("Unknown message type") from None

        message = cls(type=msg_type, headers=headers, data=frame[4 + header_length:])
        if msg_type == MessageType.CHUNK:
            message._validate_chunk()
        return message

    def _validate_chunk(self):
        index = self.headers.get('index')
        total = self.headers.get('totalChunks')
        compressed = self.headers.get('compressed')
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise MalformedMessage(f"Bad chunk index: {index!r}")
        if not isinstance(total, int) or isinstance(total, bool) or total < 1:
            raise MalformedMessage(f"Bad chunk totalChunks: {total!r}")
        if not isinstance(compressed, bool):
            raise MalformedMessage(f"Bad chunk compressed flag: {compressed!r}")

    # === Constructors ===

    @classmethod
    def control(cls, msg_type: MessageType, body: Dict[str, Any]) -> 'ChannelMessage':
        return cls(type=msg_type, headers=dict(body))

    @classmethod
    def chunk(cls, index: int, total_chunks: int, payload: bytes,
              compressed: bool) -> 'ChannelMessage':
        return cls(
            type=MessageType.CHUNK,
            headers={'index': index, 'totalChunks': total_chunks, 'compressed': compressed},
            data=payload,
        )

    # === Chunk accessors ===

    @property
    def index(self) -> int:
        return self.headers['index']

    @property
    def total_chunks(self) -> int:
        return self.headers['totalChunks']

    @property
    def compressed(self) -> bool:
        return self.headers['compressed']
