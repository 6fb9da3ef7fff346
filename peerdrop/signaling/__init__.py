"""
Signaling Module - Relay Server Logic and Client

Pairs participants by session code and forwards opaque channel-setup
payloads between them.
"""

from .hub import ConnectionHub
from .relay import SignalRelay
from .service import SignalingService
from .client import SignalingClient

__all__ = [
    'ConnectionHub',
    'SignalRelay',
    'SignalingService',
    'SignalingClient',
]
