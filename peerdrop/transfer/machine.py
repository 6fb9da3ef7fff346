"""
Transfer State Machine

Design Decision: Ownership
==========================
One ``TransferStateMachine`` per participant owns everything about the
current transfer: the handshake, the ``TransferSession`` (created on
accept, discarded on reset), the reassembly buffer and the scheduler
task. Nothing lives in module-level state.

States::

    idle ──send_file──> offering ──> awaitingResponse ──accept──> sending ──> completed
      │                                   └──reject──> idle
      └──accept()──> receiving ──> completed

    any state except idle/completed ──failure──> error
    error/completed ──reset()──> idle

Design Decision: Retry
======================
Only a channel reporting ``failed`` is retried: up to ``max_retries``
re-opens per transfer, waiting ``base * 2**attempt`` (capped) before each.
A clean ``closed`` is never retried; it is an error only while a transfer
is active. When the channel comes back during ``sending`` the sender
restarts from ``file-info``, which resets the receiver's buffer. This is
a restart, not a resume.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple,
)

from ..config import Config
from ..errors import (
    ChannelClosedUnexpectedly,
    ChannelFailed,
    ChannelNotOpen,
    HandshakeBusy,
    MalformedMessage,
    PeerDropError,
    PeerLeft,
    RetriesExhausted,
)
from ..channel.base import ChannelState, Role
from .chunker import ChunkSource
from .handshake import HandshakeController
from .models import FileInfo, ReceivedFile, TransferOffer, TransferSession, TransferState
from .protocol import ChannelMessage, MessageType
from .reassembly import ReassemblyEngine
from .scheduler import ChunkScheduler

if TYPE_CHECKING:
    from ..channel.adapter import PeerChannelAdapter

logger = logging.getLogger(__name__)

# Sends a handshake event through the signal relay
RelayFunc = Callable[[str, Dict[str, Any]], Awaitable[None]]

UpdateListener = Callable[[Dict[str, Any]], None]
OfferListener = Callable[[TransferOffer], None]
FileListener = Callable[[ReceivedFile], None]

ACTIVE_STATES = (
    TransferState.OFFERING,
    TransferState.AWAITING_RESPONSE,
    TransferState.SENDING,
    TransferState.RECEIVING,
)

# Channel message type -> relay event name
RELAY_EVENTS = {
    MessageType.TRANSFER_OFFER: 'transfer-offer',
    MessageType.TRANSFER_RESPONSE: 'transfer-response',
}


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for channel re-opens."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    @classmethod
    def from_config(cls, config: Config) -> 'RetryPolicy':
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )


class TransferStateMachine:
    """
    Drives one participant's side of a transfer.

    Example::

        machine = TransferStateMachine(channel, relay=client_relay)
        machine.on_update(print)
        await machine.send_file(FileChunkSource(path), path.name)
        await machine.wait_for_state(TransferState.COMPLETED, TransferState.ERROR)
    """

    def __init__(self, channel: 'PeerChannelAdapter',
                 relay: Optional[RelayFunc] = None,
                 config: Optional[Config] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Args:
            channel: Peer channel adapter (not yet opened)
            relay: Sends handshake events while the channel is not open
            config: Limits and scheduler tuning
            retry_policy: Overrides the policy derived from config
        """
        self.channel = channel
        self.relay = relay
        self.config = config or Config()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)

        self.state = TransferState.IDLE
        self.role: Optional[Role] = None
        self.session: Optional[TransferSession] = None
        self.last_error: Optional[PeerDropError] = None
        self.received: Optional[ReceivedFile] = None

        self.handshake = HandshakeController(
            max_file_size=self.config.max_file_size,
            is_busy=lambda: self.state != TransferState.IDLE,
        )
        self.reassembly = ReassemblyEngine()

        self._source: Optional[ChunkSource] = None
        self._channel_role: Optional[Role] = None
        self._scheduler_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._retry_attempt = 0
        self._resetting = False
        self._tasks: Set[asyncio.Task] = set()
        self._waiters: List[Tuple[Tuple[TransferState, ...], asyncio.Future]] = []

        self._update_listeners: List[UpdateListener] = []
        self._offer_listeners: List[OfferListener] = []
        self._file_listeners: List[FileListener] = []

        channel.on_message(self._on_channel_message)
        channel.on_state_change(self._on_channel_state)
        channel.on_error(self._on_channel_error)

    # === Listeners ===

    def on_update(self, listener: UpdateListener) -> UpdateListener:
        self._update_listeners.append(listener)
        return listener

    def on_offer(self, listener: OfferListener) -> OfferListener:
        self._offer_listeners.append(listener)
        return listener

    def on_file(self, listener: FileListener) -> FileListener:
        self._file_listeners.append(listener)
        return listener

    def snapshot(self) -> Dict[str, Any]:
        """Plain-value view of the machine for a UI."""
        return {
            'state': self.state.value,
            'role': self.role.value if self.role else None,
            'channel': self.channel.state.value,
            'error': self.last_error.to_dict() if self.last_error else None,
            'rejectReason': self.handshake.last_reject_reason,
            'retryAttempt': self._retry_attempt,
            'transfer': self.session.to_dict() if self.session else None,
        }

    async def wait_for_state(self, *states: TransferState,
                             timeout: Optional[float] = None) -> TransferState:
        """Wait until the machine is in one of ``states``."""
        if self.state in states:
            return self.state
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((states, future))
        return await asyncio.wait_for(future, timeout)

    # === Sender actions ===

    async def send_file(self, source: ChunkSource, file_name: str,
                        mime_type: Optional[str] = None):
        """
        Offer a file to the peer.

        Raises:
            HandshakeBusy: not idle
            InvalidOffer, FileTooLarge: the machine also moves to error
        """
        if self.state != TransferState.IDLE:
            raise HandshakeBusy(f"Cannot send while {self.state.value}")

        self.role = Role.SENDER
        # Registered while still idle: the handshake counts any other state as busy
        try:
            offer = TransferOffer.create(
                file_name, source.file_size, mime_type,
                max_file_size=self.config.max_file_size,
            )
            message = self.handshake.make_offer(offer)
        except PeerDropError as e:
            self._set_state(TransferState.OFFERING)
            self._fail(e)
            raise

        self._set_state(TransferState.OFFERING)
        self._source = source
        try:
            await self._send_handshake(MessageType.TRANSFER_OFFER, message)
        except PeerDropError as e:
            self._fail(e)
            raise

        # The response may already have arrived while the offer was in flight
        if self.state == TransferState.OFFERING:
            self._set_state(TransferState.AWAITING_RESPONSE)

    # === Receiver actions ===

    async def accept(self):
        """Accept the pending incoming offer and start receiving."""
        message = self.handshake.respond(True)
        offer = self.handshake.offer

        self.role = Role.RECEIVER
        self.session = TransferSession(offer=offer, role='receiver', state=TransferState.RECEIVING)
        self._retry_attempt = 0
        self._set_state(TransferState.RECEIVING)

        if not self.channel.is_open:
            # Ready for the sender's connection offer before telling it to go
            self._channel_role = self._channel_role or Role.RECEIVER
            self.channel.open(self._channel_role)

        try:
            await self._send_handshake(MessageType.TRANSFER_RESPONSE, message)
        except PeerDropError as e:
            self._fail(e)
            raise

    async def reject(self, reason: Optional[str] = None):
        """Decline the pending incoming offer; the sender is told."""
        message = self.handshake.respond(False, reason)
        await self._send_handshake(MessageType.TRANSFER_RESPONSE, message)
        self._notify()

    # === Both sides ===

    def establish(self, role: Role):
        """Open the peer channel ahead of any offer."""
        self._channel_role = role
        self._retry_attempt = 0
        self.channel.open(role)

    def peer_left(self):
        """The relay reported that the other participant left the session."""
        if self.state == TransferState.COMPLETED:
            logger.info("Peer left after the transfer completed")
            return
        self._fail(PeerLeft("The other participant left the session"))

    async def reset(self):
        """
        Tear everything down and return to idle.

        Cancels scheduler and retry tasks, closes the channel and drops every
        buffer; no partial state survives.
        """
        self._resetting = True
        try:
            await self._cancel_tasks()
            await self.channel.close()
            if self._source is not None:
                await self._source.close()
        finally:
            self._source = None
            self.reassembly.reset()
            self.handshake.reset()
            self.session = None
            self.received = None
            self.last_error = None
            self.role = None
            self._channel_role = None
            self._retry_attempt = 0
            self._resetting = False
        self._set_state(TransferState.IDLE)

    async def handle_relay_event(self, event: str, message: Dict[str, Any]):
        """Feed a handshake event that arrived through the signal relay."""
        if event == 'transfer-offer':
            await self._on_offer(message)
        elif event == 'transfer-response':
            self._on_response(message)
        else:
            logger.debug(f"Ignoring relay event '{event}'")

    # === Handshake ===

    async def _send_handshake(self, msg_type: MessageType, body: Dict[str, Any]):
        if self.channel.is_open:
            await self.channel.send_control(msg_type, body)
        elif self.relay is not None:
            await self.relay(RELAY_EVENTS[msg_type], body)
        else:
            raise ChannelNotOpen(f"No path to send {msg_type.value}")

    async def _on_offer(self, body: Dict[str, Any]):
        was_active = self.state in ACTIVE_STATES
        auto_reply = self.handshake.receive_offer(body)

        if auto_reply is not None:
            try:
                await self._send_handshake(MessageType.TRANSFER_RESPONSE, auto_reply)
            except PeerDropError as e:
                logger.warning(f"Could not deliver automatic reject: {e.message}")
            if was_active and auto_reply.get('reason') == 'busy':
                self._fail(HandshakeBusy("Received an offer while a transfer is in progress"))
            return

        offer = self.handshake.offer
        logger.info(f"Incoming offer: {offer.file_name} ({offer.file_size:,} bytes)")
        for listener in list(self._offer_listeners):
            listener(offer)
        self._notify()

    def _on_response(self, body: Dict[str, Any]):
        if self.state not in (TransferState.OFFERING, TransferState.AWAITING_RESPONSE):
            self._unexpected("transfer-response")
            return

        try:
            offer = self.handshake.receive_response(body)
        except MalformedMessage as e:
            self._fail(e)
            return

        if offer is None:
            self._close_source()
            self.role = None
            self._set_state(TransferState.IDLE)
            return

        self.session = TransferSession(offer=offer, role='sender', state=TransferState.SENDING)
        self._retry_attempt = 0
        self._set_state(TransferState.SENDING)

        if self.channel.is_open:
            self._start_sending()
        elif self.channel.state != ChannelState.CONNECTING:
            self._channel_role = self._channel_role or Role.SENDER
            self.channel.open(self._channel_role)
        # else: OPEN arrives through _on_channel_state and starts sending

    # === Sending ===

    def _start_sending(self):
        previous = self._scheduler_task
        self._scheduler_task = asyncio.create_task(self._run_sender(previous))

    async def _run_sender(self, previous: Optional[asyncio.Task] = None):
        # A cancelled attempt must finish unwinding before the restart begins
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.gather(previous, return_exceptions=True)

        session = self.session
        offer = session.offer
        session.restart()
        try:
            await self.channel.send_control(MessageType.FILE_INFO, offer.file_info().to_dict())
            scheduler = ChunkScheduler(
                self.channel.send, self._source, offer,
                session=session,
                sample_interval=self.config.sample_interval,
                stall_timeout=self.config.stall_timeout,
                max_inflight_bytes=self.config.max_inflight_bytes,
                on_progress=self._notify,
            )
            await scheduler.run()
        except asyncio.CancelledError:
            raise
        except (ChannelFailed, ChannelNotOpen) as e:
            if self.channel.state != ChannelState.OPEN:
                # The channel state handler owns retry
                logger.debug(f"Send interrupted by channel {self.channel.state.value}: {e.message}")
                return
            self._fail(e)
            return
        except PeerDropError as e:
            self._fail(e)
            return
        except Exception as e:
            logger.exception(f"Sending {offer.file_name} failed")
            self._fail(PeerDropError(f"Unexpected error while sending: {e!r}"))
            return

        if self.state == TransferState.SENDING:
            self._set_state(TransferState.COMPLETED)

    # === Receiving ===

    def _on_channel_message(self, message: ChannelMessage):
        if self._resetting:
            return

        if message.type == MessageType.TRANSFER_OFFER:
            self._spawn(self._on_offer(message.headers))
        elif message.type == MessageType.TRANSFER_RESPONSE:
            self._on_response(message.headers)
        elif message.type == MessageType.FILE_INFO:
            self._on_file_info(message.headers)
        elif message.type == MessageType.CHUNK:
            self._on_chunk(message)

    def _on_file_info(self, body: Dict[str, Any]):
        if self.state != TransferState.RECEIVING:
            self._unexpected("file-info")
            return

        try:
            info = FileInfo.from_dict(body)
        except MalformedMessage as e:
            self._fail(e)
            return

        offer = self.session.offer
        if (info.file_name, info.file_size, info.total_chunks) != (
                offer.file_name, offer.file_size, offer.total_chunks):
            self._fail(MalformedMessage(
                f"file-info for {info.file_name} does not match the accepted offer"
            ))
            return

        self.reassembly.start(info)
        self.session.restart()
        self._notify()

    def _on_chunk(self, message: ChannelMessage):
        if self.state != TransferState.RECEIVING:
            self._unexpected("chunk")
            return

        try:
            received = self.reassembly.add_message(message)
        except PeerDropError as e:
            self._fail(e)
            return

        session = self.session
        if received is None:
            session.completed_chunks = self.reassembly.completed_chunks
            session.bytes_transferred = self.reassembly.bytes_received
            self._notify()
            return

        session.completed_chunks = session.total_chunks
        session.bytes_transferred = received.size
        self.received = received
        self._set_state(TransferState.COMPLETED)
        for listener in list(self._file_listeners):
            listener(received)

    # === Channel events ===

    def _on_channel_state(self, state: ChannelState, error: Optional[PeerDropError]):
        if self._resetting:
            return

        if state == ChannelState.OPEN:
            if self.state == TransferState.SENDING:
                self._start_sending()
            self._notify()
        elif state == ChannelState.FAILED:
            self._on_channel_failed(error or ChannelFailed())
        elif state == ChannelState.CLOSED:
            if self.state in ACTIVE_STATES:
                self._fail(ChannelClosedUnexpectedly(
                    f"Peer channel closed while {self.state.value}"
                ))
            else:
                self._notify()

    def _on_channel_failed(self, error: PeerDropError):
        self._cancel_scheduler()

        if self.state in (TransferState.COMPLETED, TransferState.ERROR):
            return
        if self.state == TransferState.IDLE and self._channel_role is None:
            return

        role = self._channel_role or self.role
        if not self.retry_policy.can_retry(self._retry_attempt):
            self._fail(RetriesExhausted(
                f"Peer channel failed after {self._retry_attempt} retries: {error.message}"
            ))
            return

        delay = self.retry_policy.delay(self._retry_attempt)
        self._retry_attempt += 1
        logger.warning(
            f"Peer channel failed ({error.message}); retry "
            f"{self._retry_attempt}/{self.retry_policy.max_retries} in {delay:.1f}s"
        )
        self._retry_task = asyncio.create_task(self._retry_open(role, delay))
        self._notify()

    async def _retry_open(self, role: Role, delay: float):
        await asyncio.sleep(delay)
        if self.state in (TransferState.COMPLETED, TransferState.ERROR):
            return
        self.channel.open(role)

    def _on_channel_error(self, error: PeerDropError):
        if self.state in ACTIVE_STATES:
            self._fail(error)
        else:
            logger.info(f"Dropping undecodable message while {self.state.value}")

    # === Internals ===

    def _unexpected(self, what: str):
        if self.state in (TransferState.IDLE, TransferState.COMPLETED, TransferState.ERROR):
            logger.info(f"Dropping {what} received while {self.state.value}")
            return
        self._fail(MalformedMessage(f"Unexpected {what} while {self.state.value}"))

    def _fail(self, error: PeerDropError):
        if self.state == TransferState.ERROR:
            logger.debug(f"Already in error, ignoring {error.reason}")
            return
        if self.state == TransferState.COMPLETED:
            logger.info(f"Ignoring {error.reason} after completion")
            return

        logger.error(f"Transfer failed [{error.reason}]: {error.message}")
        self.last_error = error
        self._cancel_scheduler()
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        self.reassembly.reset()
        if self.session is not None:
            self.session.state = TransferState.ERROR
        self._set_state(TransferState.ERROR)

    def _cancel_scheduler(self):
        if self._scheduler_task is not None and not self._scheduler_task.done():
            if self._scheduler_task is not asyncio.current_task():
                self._scheduler_task.cancel()

    async def _cancel_tasks(self):
        tasks = [
            t for t in (self._scheduler_task, self._retry_task, *self._tasks)
            if t is not None and t is not asyncio.current_task()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduler_task = None
        self._retry_task = None
        self._tasks.clear()

    def _close_source(self):
        if self._source is not None:
            self._spawn(self._source.close())
            self._source = None

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")

    def _set_state(self, state: TransferState):
        if state != self.state:
            logger.info(f"Transfer {self.state.value} -> {state.value}")
        self.state = state
        if self.session is not None and state != TransferState.IDLE:
            self.session.state = state

        waiters, self._waiters = self._waiters, []
        for states, future in waiters:
            if future.done():
                continue
            if state in states:
                future.set_result(state)
            else:
                self._waiters.append((states, future))
        self._notify()

    def _notify(self):
        if not self._update_listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._update_listeners):
            listener(snapshot)
