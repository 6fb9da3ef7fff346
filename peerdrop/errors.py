"""
Error Taxonomy

Every failure in the transfer core is one of these kinds. Each kind carries
a stable ``reason`` string that travels on the wire (relay replies,
auto-rejects) and is shown to the user, so no failure ever surfaces as a
generic error.

Only ``ChannelFailed`` is recoverable locally (bounded retry in the
transfer state machine); every other kind moves the session to ``error``.
"""

from typing import Optional


class PeerDropError(Exception):
    """Base class for all transfer-core errors."""

    reason: str = "error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.reason
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'reason': self.reason, 'message': self.message}


# === Session directory ===

class SessionNotFound(PeerDropError):
    reason = "SessionNotFound"


class SessionFull(PeerDropError):
    reason = "SessionFull"


class SessionExhausted(PeerDropError):
    """Code generation kept colliding with live sessions."""
    reason = "Exhausted"


# === Offers ===

class InvalidOffer(PeerDropError):
    reason = "InvalidOffer"


class FileTooLarge(PeerDropError):
    reason = "FileTooLarge"


class HandshakeBusy(PeerDropError):
    reason = "HandshakeBusy"


# === Peer channel ===

class ChannelNotOpen(PeerDropError):
    reason = "ChannelNotOpen"


class ChannelFailed(PeerDropError):
    reason = "ChannelFailed"


class ChannelClosedUnexpectedly(PeerDropError):
    reason = "ChannelClosedUnexpectedly"


class RetriesExhausted(PeerDropError):
    reason = "RetriesExhausted"


class PeerLeft(PeerDropError):
    reason = "PeerLeft"


# === Transfer ===

class MalformedMessage(PeerDropError):
    reason = "MalformedMessage"


class ChunkIntegrityMismatch(PeerDropError):
    reason = "ChunkIntegrityMismatch"


class TransferStalled(PeerDropError):
    reason = "TransferStalled"


def error_for(reason: str, message: Optional[str] = None) -> PeerDropError:
    """Rebuild an error from its wire ``reason``; unknown reasons map to the base class."""
    for cls in _all_subclasses(PeerDropError):
        if cls.reason == reason:
            return cls(message)
    error = PeerDropError(message or reason)
    error.reason = reason
    return error


def _all_subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _all_subclasses(sub)
