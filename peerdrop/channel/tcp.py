"""
TCP Peer Transport

Design Decision: Who Listens
============================

The sender listens, the receiver dials:

1. Sender opens a listening socket on an ephemeral port and signals
   ``offer {host, port, token}`` through the relay.
2. Receiver connects, presents the token as its first frame and signals
   ``answer``.
3. Sender accepts the first connection with the right token and stops
   listening; anything else is dropped.

Framing: every frame is a 4-byte big-endian length followed by the frame
bytes. ``StreamWriter.drain()`` provides the send-side backpressure.

Connection events:
- connect/handshake timeout, socket error, truncated frame: ``failed``
- orderly EOF between frames: ``closed``
"""

import asyncio
import hmac
import logging
import secrets
import socket
import struct
from typing import Any, Dict, Optional

from ..errors import ChannelFailed
from .base import ChannelState, FrameCallback, Role, SignalFunc, StateCallback

logger = logging.getLogger(__name__)

LENGTH_PREFIX = struct.Struct('>I')
MAX_FRAME_SIZE = 16 * 1024 * 1024
DEFAULT_CONNECT_TIMEOUT = 15.0


def get_local_ip() -> str:
    """Best guess at the address a LAN peer can reach us on."""
    try:
        # No packet is sent; connect() on UDP only picks the route
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


def pack_frame(frame: bytes) -> bytes:
    return LENGTH_PREFIX.pack(len(frame)) + frame


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    """
    Read one length-prefixed frame.

    Raises:
        asyncio.IncompleteReadError: EOF (``partial`` is empty on a clean
            EOF between frames)
        ChannelFailed: frame length over MAX_FRAME_SIZE
    """
    header = await reader.readexactly(LENGTH_PREFIX.size)
    (length,) = LENGTH_PREFIX.unpack(header)
    if length > MAX_FRAME_SIZE:
        raise ChannelFailed(f"Frame too large: {length}")
    return await reader.readexactly(length)


class TcpTransport:
    """``PeerTransport`` over one TCP connection."""

    def __init__(self, host: str = '0.0.0.0', advertise_host: Optional[str] = None,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        """
        Args:
            host: Interface the sender listens on
            advertise_host: Address put in the offer (default: local IP)
            connect_timeout: Bound on each negotiation step
        """
        self.host = host
        self.advertise_host = advertise_host
        self.connect_timeout = connect_timeout

        self._on_frame: Optional[FrameCallback] = None
        self._on_state: Optional[StateCallback] = None

        self._server: Optional[asyncio.AbstractServer] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._connected: Optional[asyncio.Event] = None
        # Latest connection offer from the sender; survives a failed attempt
        self._offer: Optional[Dict[str, Any]] = None
        self._offer_ready = asyncio.Event()
        self._closing = False

    def bind(self, on_frame: FrameCallback, on_state: StateCallback):
        self._on_frame = on_frame
        self._on_state = on_state

    # === Negotiation ===

    async def negotiate(self, role: Role, signal: SignalFunc):
        await self._teardown()
        self._closing = False
        if role == Role.SENDER:
            await self._listen(signal)
        else:
            await self._dial(signal)

    async def _listen(self, signal: SignalFunc):
        self._token = secrets.token_hex(16)
        self._connected = asyncio.Event()
        self._server = await asyncio.start_server(self._handle_incoming, self.host, 0)
        port = self._server.sockets[0].getsockname()[1]
        host = self.advertise_host or get_local_ip()
        logger.info(f"Waiting for peer on {host}:{port}")

        await signal('offer', {'host': host, 'port': port, 'token': self._token})
        try:
            await asyncio.wait_for(self._connected.wait(), self.connect_timeout)
        except asyncio.TimeoutError:
            await self._stop_server()
            raise ChannelFailed(f"Peer did not connect within {self.connect_timeout:.0f}s") from None

    async def _handle_incoming(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info('peername')
        try:
            token = await asyncio.wait_for(read_frame(reader), self.connect_timeout)
        except (asyncio.IncompleteReadError, asyncio.TimeoutError, ChannelFailed, OSError) as e:
            logger.debug(f"Dropping connection from {peer}: {e!r}")
            writer.close()
            return

        accepted = (
            self._token is not None
            and not self._connected.is_set()
            and hmac.compare_digest(token, self._token.encode())
        )
        if not accepted:
            logger.warning(f"Rejected connection from {peer}")
            writer.close()
            return

        logger.info(f"Peer connected from {peer}")
        self._connected.set()
        # Stop listening; waiting for the server here would wait on this very connection
        if self._server is not None:
            self._server.close()
            self._server = None
        self._attach(reader, writer)

    async def _dial(self, signal: SignalFunc):
        try:
            await asyncio.wait_for(self._offer_ready.wait(), self.connect_timeout)
        except asyncio.TimeoutError:
            raise ChannelFailed(f"No connection offer within {self.connect_timeout:.0f}s") from None

        payload = self._offer
        self._offer = None
        self._offer_ready.clear()

        host, port, token = payload.get('host'), payload.get('port'), payload.get('token')
        if not isinstance(host, str) or not isinstance(port, int) or not isinstance(token, str):
            raise ChannelFailed(f"Malformed connection offer: {payload!r}")

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ChannelFailed(f"Connecting to {host}:{port} timed out") from None
        except OSError as e:
            raise ChannelFailed(f"Connecting to {host}:{port} failed: {e}") from e

        writer.write(pack_frame(token.encode()))
        await writer.drain()
        logger.info(f"Connected to peer at {host}:{port}")

        await signal('answer', {})
        self._attach(reader, writer)

    async def handle_signal(self, kind: str, payload: Dict[str, Any]):
        if kind == 'offer':
            self._offer = payload
            self._offer_ready.set()
        elif kind == 'answer':
            logger.debug("Peer answered connection offer")
        else:
            logger.debug(f"Ignoring '{kind}' signal")

    def _attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._report(ChannelState.OPEN)
        self._read_task = asyncio.create_task(self._read_loop(reader))

    # === Data ===

    async def send_frame(self, frame: bytes):
        if self._writer is None:
            raise ConnectionError("Not connected")
        async with self._write_lock:
            self._writer.write(pack_frame(frame))
            await self._writer.drain()

    async def _read_loop(self, reader: asyncio.StreamReader):
        try:
            while True:
                frame = await read_frame(reader)
                self._on_frame(frame)
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError as e:
            if self._closing:
                return
            if e.partial:
                self._report(ChannelState.FAILED, ChannelFailed("Connection lost mid-frame"))
            else:
                logger.info("Peer closed the connection")
                self._report(ChannelState.CLOSED)
        except ChannelFailed as e:
            self._report(ChannelState.FAILED, e)
        except (ConnectionError, OSError) as e:
            if not self._closing:
                self._report(ChannelState.FAILED, ChannelFailed(f"Connection error: {e!r}"))

    # === Teardown ===

    async def close(self):
        self._closing = True
        self._offer = None
        self._offer_ready.clear()
        await self._teardown()

    async def _teardown(self):
        await self._stop_server()

        if self._read_task is not None:
            if self._read_task is not asyncio.current_task():
                self._read_task.cancel()
                await asyncio.gather(self._read_task, return_exceptions=True)
            self._read_task = None

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"Error while closing connection: {e!r}")
            self._writer = None
            self._reader = None

    async def _stop_server(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def _report(self, state: ChannelState, error: Optional[ChannelFailed] = None):
        if self._on_state is not None:
            self._on_state(state, error)
