"""
Chunk Scheduler (sender side)

Design Decision: Shared State
=============================

Options Considered:
1. Counters updated from every chunk task under an asyncio.Lock
   - Works, but dispatch, sampling and completion all contend on it
2. One coordinating task owns all scheduler state

Decision: Single coordinator
- Chunk tasks only read, compress and send one chunk, then return the
  raw byte count. They never touch shared counters.
- The coordinator dispatches new tasks, collects finished ones
  (``asyncio.wait(FIRST_COMPLETED)``), recomputes concurrency on the
  sample cadence and checks for stalls. Being the only writer, it cannot
  lose an update when several chunks finish together.
- A chunk index is taken off the pending queue exactly once, so no
  scheduling race can send a chunk twice.

Design Decision: Backpressure
=============================
In-flight work is bounded two ways: by the adaptive concurrency level and
by ``max_inflight_bytes``. The channel's own send awaits drain, so a slow
receiver stalls the chunk tasks, which stalls dispatch.

Design Decision: Stalls
=======================
No chunk completing for ``stall_timeout``, or a single chunk processing
longer than that, raises ``TransferStalled``. Chunks are not requeued: a
chunk that cannot be sent in that long means the channel is unusable.
"""

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import TransferStalled
from .chunker import ChunkSource, SizeBand, get_chunk_bounds, select_band
from .compression import compress_chunk
from .models import TransferOffer, TransferSession
from .protocol import ChannelMessage

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL = 0.5
DEFAULT_STALL_TIMEOUT = 60.0
DEFAULT_MAX_INFLIGHT_BYTES = 8 * 1024 * 1024

# Relative throughput change treated as noise
THROUGHPUT_TOLERANCE = 0.05

SendFunc = Callable[[ChannelMessage], Awaitable[None]]


class ChunkStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"


class ConcurrencyController:
    """
    Hill-climbing concurrency within a band's floor and ceiling.

    Each sample compares throughput to the previous window: an improvement
    keeps moving in the same direction, a drop reverses direction, and a
    change within the tolerance holds. A window with no progress at all
    steps down; the first window with progress after that steps up.
    """

    def __init__(self, band: SizeBand):
        self.floor = band.min_concurrency
        self.ceiling = band.max_concurrency
        self.current = band.initial_concurrency
        self.last_throughput = 0.0
        self._direction = 1

    def sample(self, bytes_sent: int, elapsed: float) -> int:
        """
        Feed one sampling window.

        Args:
            bytes_sent: Raw bytes completed during the window
            elapsed: Window length in seconds

        Returns:
            The new concurrency level
        """
        if elapsed <= 0:
            return self.current

        throughput = bytes_sent / elapsed
        previous = self.last_throughput
        self.last_throughput = throughput

        if throughput == 0:
            self._direction = -1
            self._step()
        elif previous == 0:
            self._direction = 1
            self._step()
        elif throughput > previous * (1 + THROUGHPUT_TOLERANCE):
            self._step()
        elif throughput < previous * (1 - THROUGHPUT_TOLERANCE):
            self._direction = -self._direction
            self._step()

        return self.current

    def _step(self):
        self.current = max(self.floor, min(self.ceiling, self.current + self._direction))


class ChunkScheduler:
    """
    Streams one file as chunks over the peer channel.

    Usage::

        scheduler = ChunkScheduler(channel.send, source, offer, session=session)
        await scheduler.run()   # returns when every chunk is sent

    Cancelling the task running ``run()`` cancels every in-flight chunk.
    """

    def __init__(self, send: SendFunc, source: ChunkSource, offer: TransferOffer,
                 session: Optional[TransferSession] = None,
                 sample_interval: float = DEFAULT_SAMPLE_INTERVAL,
                 stall_timeout: float = DEFAULT_STALL_TIMEOUT,
                 max_inflight_bytes: int = DEFAULT_MAX_INFLIGHT_BYTES,
                 on_progress: Optional[Callable[[], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.send = send
        self.source = source
        self.offer = offer
        self.session = session
        self.sample_interval = sample_interval
        self.stall_timeout = stall_timeout
        self.max_inflight_bytes = max_inflight_bytes
        self.on_progress = on_progress
        self._clock = clock

        self.band = select_band(offer.file_size)
        self.controller = ConcurrencyController(self.band)

        self.status: List[ChunkStatus] = [ChunkStatus.PENDING] * offer.total_chunks
        self.completed_chunks = 0
        self.bytes_sent = 0
        self.wire_bytes_sent = 0
        self.peak_concurrency = self.controller.current

        self._inflight: Dict[asyncio.Task, Tuple[int, int, float]] = {}
        self._inflight_bytes = 0

    @property
    def concurrency(self) -> int:
        return self.controller.current

    @property
    def is_complete(self) -> bool:
        return self.completed_chunks == self.offer.total_chunks

    def _chunk_length(self, index: int) -> int:
        return get_chunk_bounds(index, self.offer.file_size, self.offer.chunk_size)[1]

    def _can_dispatch(self, pending: deque) -> bool:
        if not pending:
            return False
        if not self._inflight:
            return True
        if len(self._inflight) >= self.controller.current:
            return False
        return self._inflight_bytes + self._chunk_length(pending[0]) <= self.max_inflight_bytes

    async def run(self):
        """
        Send every chunk exactly once.

        Raises:
            TransferStalled: no progress, or one chunk stuck, for stall_timeout
            Any error raised by reading or sending a chunk
        """
        pending = deque(range(self.offer.total_chunks))
        now = self._clock()
        last_progress = now
        window_start = now
        window_bytes = 0

        logger.info(
            f"Sending {self.offer.file_name}: {self.offer.total_chunks} chunks of "
            f"{self.offer.chunk_size // 1024}KB, concurrency {self.controller.current} "
            f"({self.controller.floor}-{self.controller.ceiling})"
        )
        self._publish()

        try:
            while pending or self._inflight:
                while self._can_dispatch(pending):
                    self._dispatch(pending.popleft())

                now = self._clock()
                timeout = min(
                    window_start + self.sample_interval - now,
                    last_progress + self.stall_timeout - now,
                )
                done, _ = await asyncio.wait(
                    list(self._inflight),
                    timeout=max(timeout, 0),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for task in done:
                    index, length, _ = self._inflight.pop(task)
                    self._inflight_bytes -= length
                    error = task.exception()
                    if error is not None:
                        self.status[index] = ChunkStatus.PENDING
                        raise error
                    wire_length = task.result()
                    self._mark(index, ChunkStatus.SENT)
                    self.completed_chunks += 1
                    self.bytes_sent += length
                    self.wire_bytes_sent += wire_length
                    window_bytes += length

                now = self._clock()
                if done:
                    last_progress = now
                    self._publish()

                if now - window_start >= self.sample_interval:
                    before = self.controller.current
                    after = self.controller.sample(window_bytes, now - window_start)
                    self.peak_concurrency = max(self.peak_concurrency, after)
                    if after != before:
                        logger.debug(f"Concurrency {before} -> {after}")
                    if self.session is not None:
                        self.session.peak_throughput = max(
                            self.session.peak_throughput, self.controller.last_throughput,
                        )
                    window_start = now
                    window_bytes = 0
                    self._publish()

                self._check_stall(now, last_progress)
        finally:
            await self._cancel_inflight()
            await self.source.close()

        logger.info(
            f"Sent {self.offer.file_name}: {self.bytes_sent:,} bytes "
            f"({self.wire_bytes_sent:,} on the wire)"
        )

    def _dispatch(self, index: int):
        length = self._chunk_length(index)
        self._mark(index, ChunkStatus.PROCESSING)
        task = asyncio.create_task(self._send_chunk(index))
        self._inflight[task] = (index, length, self._clock())
        self._inflight_bytes += length

    async def _send_chunk(self, index: int) -> int:
        raw = await self.source.read_chunk(index, self.offer.chunk_size)
        payload, compressed = raw, False
        if self.offer.compression_requested:
            payload, compressed = compress_chunk(raw)
        await self.send(ChannelMessage.chunk(index, self.offer.total_chunks, payload, compressed))
        return len(payload)

    def _mark(self, index: int, status: ChunkStatus):
        expected = {
            ChunkStatus.PROCESSING: ChunkStatus.PENDING,
            ChunkStatus.SENT: ChunkStatus.PROCESSING,
        }[status]
        if self.status[index] != expected:
            raise RuntimeError(f"Chunk {index} cannot go {self.status[index].value} -> {status.value}")
        self.status[index] = status

    def _check_stall(self, now: float, last_progress: float):
        if now - last_progress >= self.stall_timeout:
            raise TransferStalled(
                f"No chunk completed in {self.stall_timeout:.0f}s "
                f"({self.completed_chunks}/{self.offer.total_chunks} sent)"
            )
        for index, _, started in self._inflight.values():
            if now - started >= self.stall_timeout:
                raise TransferStalled(f"Chunk {index} processing for over {self.stall_timeout:.0f}s")

    def _publish(self):
        if self.session is not None:
            self.session.completed_chunks = self.completed_chunks
            self.session.bytes_transferred = self.bytes_sent
            self.session.current_concurrency = self.controller.current
        if self.on_progress:
            self.on_progress()

    async def _cancel_inflight(self):
        if not self._inflight:
            return
        tasks = list(self._inflight)
        logger.debug(f"Cancelling {len(tasks)} in-flight chunks")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Aborted chunks were never sent
        for index, _, _ in self._inflight.values():
            self.status[index] = ChunkStatus.PENDING
        self._inflight.clear()
        self._inflight_bytes = 0
