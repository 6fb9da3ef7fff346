"""
Transfer Module - Handshake, Chunking and Reassembly

The sender streams a file as indexed chunks over the peer channel; the
receiver rebuilds it in index order once every chunk has arrived.
"""

from .models import TransferState, TransferOffer, FileInfo, TransferSession, ReceivedFile
from .protocol import ChannelMessage, MessageType
from .chunker import SizeBand, select_band, FileChunkSource, BytesChunkSource
from .handshake import HandshakeController
from .scheduler import ChunkScheduler, ConcurrencyController
from .reassembly import ReassemblyEngine
from .storage import save_received_file
from .machine import TransferStateMachine, RetryPolicy

__all__ = [
    'TransferState',
    'TransferOffer',
    'FileInfo',
    'TransferSession',
    'ReceivedFile',
    'ChannelMessage',
    'MessageType',
    'SizeBand',
    'select_band',
    'FileChunkSource',
    'BytesChunkSource',
    'HandshakeController',
    'ChunkScheduler',
    'ConcurrencyController',
    'ReassemblyEngine',
    'save_received_file',
    'TransferStateMachine',
    'RetryPolicy',
]
