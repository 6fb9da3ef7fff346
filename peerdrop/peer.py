"""
Peer Endpoint - Main Controller

Orchestrates one participant:
- Signaling client for the relay (session code, signals, handshake)
- Peer channel adapter over a transport (TCP by default)
- Transfer state machine driving the actual transfer
- Local save of received files
"""

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

from .config import Config
from .channel import PeerChannelAdapter, PeerTransport, TcpTransport
from .signaling import SignalingClient
from .signaling import messages as m
from .transfer import (
    FileChunkSource,
    ReceivedFile,
    TransferOffer,
    TransferState,
    TransferStateMachine,
    save_received_file,
)

logger = logging.getLogger(__name__)

FINISHED_STATES = (TransferState.COMPLETED, TransferState.ERROR)


class Peer:
    """
    One endpoint of a transfer.

    Usage (sender)::

        peer = Peer(config)
        await peer.start()
        code = await peer.create_session()
        await peer.wait_for_peer()
        await peer.send_file(Path("report.pdf"))
        state = await peer.wait_finished()
    """

    def __init__(self, config: Optional[Config] = None,
                 transport: Optional[PeerTransport] = None,
                 client: Optional[SignalingClient] = None):
        """
        Args:
            config: Peer configuration (uses defaults if not provided)
            transport: Peer channel transport (default: TcpTransport)
            client: Relay client (default: connects to config.relay_url)
        """
        self.config = config or Config()
        self.client = client or SignalingClient(self.config.relay_url)
        self.transport = transport or TcpTransport(connect_timeout=self.config.connect_timeout)
        self.channel = PeerChannelAdapter(self.transport, signal=self._send_signal)
        self.machine = TransferStateMachine(
            self.channel, relay=self._relay_handshake, config=self.config,
        )

        self.code: Optional[str] = None
        self.saved_path: Optional[Path] = None

        self._peer_present = asyncio.Event()
        self._offer: Optional[asyncio.Future] = None
        self._saved = asyncio.Event()
        self._tasks = set()

        self.client.set_handler(m.SIGNAL, self._on_signal)
        self.client.set_handler(m.TRANSFER_OFFER, self._on_handshake)
        self.client.set_handler(m.TRANSFER_RESPONSE, self._on_handshake)
        self.client.set_handler(m.PEER_JOINED, self._on_peer_joined)
        self.client.set_handler(m.PEER_LEFT, self._on_peer_left)

        self.machine.on_offer(self._on_offer)
        self.machine.on_file(self._on_file)

    # === Lifecycle ===

    async def start(self):
        """Connect to the relay."""
        await self.client.connect()

    async def stop(self):
        """Tear down the transfer and disconnect from the relay."""
        await self.machine.reset()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.client.close()

    # === Sessions ===

    async def create_session(self) -> str:
        """Create a session as the sender; returns the code to share."""
        reply = await self.client.request(m.CREATE_SESSION)
        self.code = reply['code']
        self._peer_present.clear()
        logger.info(f"Session code: {self.code}")
        return self.code

    async def join_session(self, code: str):
        """Join a session as the receiver."""
        reply = await self.client.request(m.JOIN_SESSION, code=code)
        self.code = reply['code']
        self._peer_present.set()

    async def leave_session(self):
        await self.client.request(m.LEAVE_SESSION)
        self.code = None
        self._peer_present.clear()

    async def wait_for_peer(self, timeout: Optional[float] = None):
        """Wait until a receiver has joined our session."""
        await asyncio.wait_for(self._peer_present.wait(), timeout)

    # === Transfers ===

    async def send_file(self, file_path: Path, mime_type: Optional[str] = None):
        """Offer a file on disk to the peer."""
        file_path = Path(file_path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(file_path.name)[0]
        await self.machine.send_file(FileChunkSource(file_path), file_path.name, mime_type)

    async def wait_for_offer(self, timeout: Optional[float] = None) -> TransferOffer:
        """Wait for the next incoming offer; returns at once if one already arrived."""
        if self._offer is None:
            self._offer = asyncio.get_running_loop().create_future()
        offer = await asyncio.wait_for(asyncio.shield(self._offer), timeout)
        self._offer = None
        return offer

    async def accept(self):
        await self.machine.accept()

    async def reject(self, reason: Optional[str] = None):
        await self.machine.reject(reason)

    async def wait_finished(self, timeout: Optional[float] = None) -> TransferState:
        """
        Wait until the transfer completes, fails, or the offer is rejected.

        Receivers additionally wait for the file to be saved.
        """
        state = await self.machine.wait_for_state(
            TransferState.COMPLETED, TransferState.ERROR, TransferState.IDLE,
            timeout=timeout,
        )
        if state == TransferState.COMPLETED and self.machine.received is not None:
            await asyncio.wait_for(self._saved.wait(), timeout)
        return state

    # === Relay events ===

    async def _send_signal(self, kind: str, payload: Dict[str, Any]):
        await self.client.send(m.SIGNAL, type=kind, payload=payload)

    async def _relay_handshake(self, event: str, body: Dict[str, Any]):
        await self.client.send(event, **body)

    async def _on_signal(self, message: dict):
        await self.channel.handle_signal(message.get('type'), message.get('payload') or {})

    async def _on_handshake(self, message: dict):
        body = {k: v for k, v in message.items() if k not in ('event', 'from')}
        await self.machine.handle_relay_event(message['event'], body)

    def _on_peer_joined(self, message: dict):
        logger.info(f"Peer {str(message.get('peerId'))[:8]} joined session {message.get('code')}")
        self._peer_present.set()

    def _on_peer_left(self, message: dict):
        logger.info(f"Peer left session {message.get('code')}")
        self._peer_present.clear()
        self.machine.peer_left()

    # === Transfer events ===

    def _on_offer(self, offer: TransferOffer):
        if self._offer is None or self._offer.done():
            self._offer = asyncio.get_running_loop().create_future()
        self._offer.set_result(offer)

    def _on_file(self, received: ReceivedFile):
        task = asyncio.create_task(self._save(received))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _save(self, received: ReceivedFile):
        try:
            self.saved_path = await save_received_file(received, self.config.download_dir)
        except OSError as e:
            logger.error(f"Could not save {received.file_name}: {e}")
        finally:
            self._saved.set()
