"""
Offer / Accept / Reject Handshake

Design Decision: Concurrent Offers
==================================

Options Considered:
1. Silently drop offers while busy
   - Offerer waits for a response that never comes
2. Queue offers
   - Needs a UI for a list of pending offers
3. Auto-reject with a reason code

Decision: Auto-reject
- An offer received in any state other than ``idle`` is answered
  immediately with ``{accepted: false, reason: "busy"}``
- Offers failing validation are answered the same way with reason
  ``invalid-offer`` or ``file-too-large``
- Rejection is always explicit: the offerer is told, never left to time out

States::

    idle --make_offer/receive_offer--> offered --accept--> accepted
                                       offered --reject--> idle
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..errors import (
    FileTooLarge,
    HandshakeBusy,
    InvalidOffer,
    MalformedMessage,
)
from .models import TransferOffer

logger = logging.getLogger(__name__)

REASON_BUSY = "busy"
REASON_INVALID = "invalid-offer"
REASON_TOO_LARGE = "file-too-large"
REASON_DECLINED = "declined"


class HandshakeState(Enum):
    IDLE = "idle"
    OFFERED = "offered"
    ACCEPTED = "accepted"


def response_message(accepted: bool, reason: Optional[str] = None) -> Dict[str, Any]:
    message = {'accepted': accepted}
    if reason:
        message['reason'] = reason
    return message


class HandshakeController:
    """
    Handshake state for one participant.

    Independent of chunk scheduling and reassembly: it only decides which
    offer, if any, has been agreed.
    """

    def __init__(self, max_file_size: Optional[int] = None,
                 is_busy: Optional[Callable[[], bool]] = None):
        """
        Args:
            max_file_size: Offers above this are auto-rejected
            is_busy: Extra busy check (e.g. a transfer still running after
                the handshake completed)
        """
        self.max_file_size = max_file_size
        self._is_busy = is_busy
        self.state = HandshakeState.IDLE
        self.offer: Optional[TransferOffer] = None
        self.outgoing = False
        self.last_reject_reason: Optional[str] = None

    @property
    def busy(self) -> bool:
        if self.state != HandshakeState.IDLE:
            return True
        return bool(self._is_busy and self._is_busy())

    # === Offerer side ===

    def make_offer(self, offer: TransferOffer) -> Dict[str, Any]:
        """
        Register an outgoing offer.

        Returns:
            The offer message to send
        """
        if self.busy:
            raise HandshakeBusy(f"Cannot offer while handshake is {self.state.value}")
        self.state = HandshakeState.OFFERED
        self.offer = offer
        self.outgoing = True
        self.last_reject_reason = None
        logger.debug(f"Offering {offer.file_name} ({offer.file_size:,} bytes)")
        return offer.to_dict()

    def receive_response(self, message: Dict[str, Any]) -> Optional[TransferOffer]:
        """
        Apply the peer's response to our offer.

        Returns:
            The agreed offer on accept, None on reject
        """
        accepted = message.get('accepted')
        if not isinstance(accepted, bool):
            raise MalformedMessage(f"transfer-response without boolean 'accepted': {accepted!r}")
        if self.state != HandshakeState.OFFERED or not self.outgoing:
            raise MalformedMessage("transfer-response without an outstanding offer")

        if accepted:
            self.state = HandshakeState.ACCEPTED
            return self.offer

        self.last_reject_reason = message.get('reason') or REASON_DECLINED
        logger.info(f"Offer for {self.offer.file_name} rejected: {self.last_reject_reason}")
        self._clear()
        return None

    # === Offeree side ===

    def receive_offer(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Consider an incoming offer.

        Returns:
            An automatic reject message to send back, or None when the
            offer is now pending a local accept/reject
        """
        if self.busy:
            logger.info("Auto-rejecting offer: busy")
            return response_message(False, REASON_BUSY)

        try:
            offer = TransferOffer.from_dict(message, max_file_size=self.max_file_size)
        except FileTooLarge as e:
            logger.info(f"Auto-rejecting offer: {e.message}")
            return response_message(False, REASON_TOO_LARGE)
        except InvalidOffer as e:
            logger.info(f"Auto-rejecting offer: {e.message}")
            return response_message(False, REASON_INVALID)

        self.state = HandshakeState.OFFERED
        self.offer = offer
        self.outgoing = False
        return None

    def respond(self, accepted: bool, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Answer the pending incoming offer.

        Returns:
            The response message to send
        """
        if self.state != HandshakeState.OFFERED or self.outgoing:
            raise InvalidOffer("No incoming offer is pending")

        if accepted:
            self.state = HandshakeState.ACCEPTED
            return response_message(True)

        self._clear()
        return response_message(False, reason or REASON_DECLINED)

    # === Lifecycle ===

    def reset(self):
        self._clear()
        self.last_reject_reason = None

    def _clear(self):
        self.state = HandshakeState.IDLE
        self.offer = None
        self.outgoing = False
