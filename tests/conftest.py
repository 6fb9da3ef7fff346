"""Shared pytest fixtures for all tests."""

import asyncio
import inspect
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from peerdrop.channel import ChannelState, PeerChannelAdapter, Role
from peerdrop.config import Config
from peerdrop.errors import ChannelFailed, error_for
from peerdrop.transfer import TransferStateMachine


class MemoryTransport:
    """
    In-process ``PeerTransport``; two of them form a connected pair.

    ``fail_negotiations`` makes the next N negotiations fail, and
    ``fail_after_frames`` drops the link (both sides see ``failed``) once
    that many frames have been sent. ``fail_negotiations_after_drop`` is
    added to ``fail_negotiations`` when the link drops.
    """

    def __init__(self, connect_timeout: float = 2.0):
        self.peer: Optional['MemoryTransport'] = None
        self.connect_timeout = connect_timeout
        self.fail_negotiations = 0
        self.fail_after_frames: Optional[int] = None
        self.fail_negotiations_after_drop = 0
        self.frames_sent = 0
        self.negotiations = 0
        self.signals: List[Tuple[str, Dict[str, Any]]] = []

        self._on_frame = None
        self._on_state = None
        self._ready = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self.connected = False

    @classmethod
    def pair(cls, **kwargs) -> Tuple['MemoryTransport', 'MemoryTransport']:
        a, b = cls(**kwargs), cls(**kwargs)
        a.peer, b.peer = b, a
        return a, b

    def bind(self, on_frame, on_state):
        self._on_frame = on_frame
        self._on_state = on_state

    async def negotiate(self, role: Role, signal):
        self.negotiations += 1
        if self.fail_negotiations > 0:
            self.fail_negotiations -= 1
            raise ChannelFailed("Simulated negotiation failure")

        self._ready.set()
        try:
            await asyncio.wait_for(self.peer._ready.wait(), self.connect_timeout)
        except asyncio.TimeoutError:
            self._ready.clear()
            raise ChannelFailed("Peer never negotiated") from None

        self.connected = True
        self._on_state(ChannelState.OPEN, None)
        self._reader = asyncio.create_task(self._read_loop())

    async def handle_signal(self, kind: str, payload: Dict[str, Any]):
        self.signals.append((kind, payload))

    async def send_frame(self, frame: bytes):
        if not self.connected:
            raise ConnectionError("Not connected")
        self.frames_sent += 1
        if self.fail_after_frames is not None and self.frames_sent > self.fail_after_frames:
            self.fail_after_frames = None
            self.fail()
            raise ConnectionError("Simulated link drop")
        self.peer._inbox.put_nowait(frame)
        await asyncio.sleep(0)

    async def _read_loop(self):
        while True:
            frame = await self._inbox.get()
            self._on_frame(frame)

    def fail(self):
        """Drop the link; both sides report ``failed``."""
        self.fail_negotiations += self.fail_negotiations_after_drop
        for side in (self, self.peer):
            side._disconnect()
        for side in (self, self.peer):
            side._on_state(ChannelState.FAILED, ChannelFailed("Simulated link drop"))

    def _disconnect(self):
        self.connected = False
        self._ready.clear()
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        self._inbox = asyncio.Queue()

    async def close(self):
        was_connected = self.connected
        self._disconnect()
        if was_connected and self.peer.connected:
            self.peer._disconnect()
            self.peer._on_state(ChannelState.CLOSED, None)


class RecordingRelay:
    """Handshake relay that records what was sent and optionally forwards it."""

    def __init__(self):
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.target: Optional[TransferStateMachine] = None
        self._tasks = set()

    async def __call__(self, event: str, body: Dict[str, Any]):
        self.sent.append((event, dict(body)))
        if self.target is not None:
            task = asyncio.create_task(self.target.handle_relay_event(event, dict(body)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class FakeConnection:
    """Relay-side connection stand-in; records everything pushed to it."""

    def __init__(self):
        self.sent: List[dict] = []

    async def send_json(self, message: dict):
        self.sent.append(message)

    def events(self) -> List[str]:
        return [message['event'] for message in self.sent]


class LocalRelayClient:
    """``SignalingClient`` stand-in wired straight into a ``SignalingService``."""

    def __init__(self, service):
        self.service = service
        self.participant_id: Optional[str] = None
        self._handlers = {}

    def set_handler(self, event, handler):
        self._handlers[event] = handler

    async def connect(self):
        self.participant_id = self.service.connect(self)

    async def close(self):
        if self.participant_id is not None:
            await self.service.disconnect(self.participant_id)
            self.participant_id = None

    async def send(self, event: str, **fields):
        await self.service.handle(self.participant_id, {'event': event, **fields})

    async def request(self, event: str, **fields) -> dict:
        reply = await self.service.handle(self.participant_id, {'event': event, **fields})
        if not reply.get('success'):
            raise error_for(reply['error'], reply.get('message'))
        return reply

    async def send_json(self, message: dict):
        handler = self._handlers.get(message['event'])
        if handler is not None:
            result = handler(message)
            if inspect.isawaitable(result):
                await result


@pytest.fixture
def fast_config(tmp_path):
    """Config with short retry delays and a temp download directory."""
    return Config(
        download_dir=tmp_path / 'downloads',
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        sample_interval=0.05,
        stall_timeout=5.0,
    )


@pytest_asyncio.fixture
async def machine_pair(fast_config):
    """
    Sender and receiver machines joined by an in-memory channel, with
    handshake events relayed between them.

    Returns:
        (sender, receiver, sender_transport, receiver_transport)
    """
    sender_transport, receiver_transport = MemoryTransport.pair()
    sender_relay, receiver_relay = RecordingRelay(), RecordingRelay()

    sender = TransferStateMachine(
        PeerChannelAdapter(sender_transport), relay=sender_relay, config=fast_config,
    )
    receiver = TransferStateMachine(
        PeerChannelAdapter(receiver_transport), relay=receiver_relay, config=fast_config,
    )
    sender_relay.target = receiver
    receiver_relay.target = sender

    yield sender, receiver, sender_transport, receiver_transport

    await sender.reset()
    await receiver.reset()


@pytest.fixture
def text_payload():
    """3,000,000 bytes of text (64KB band, 46 chunks)."""
    line = b"peerdrop moves files directly between two peers.\n"
    return (line * (3_000_000 // len(line) + 1))[:3_000_000]
