"""
Session Directory

Design Decision: Pairing Codes
==============================

Options Considered:
1. UUID room ids
   - No collisions, but impossible to read aloud or type on a phone
2. Word lists ("purple-otter-42")
   - Friendly, but needs a dictionary and is locale dependent
3. Short numeric codes
   - 6 digits = 1,000,000 codes, trivially typed
   - Must handle collisions with live sessions

Decision: 6-digit numeric codes
- Regenerate on collision with a live session (bounded attempts)
- A code held by an expired session is simply reclaimed
- Sessions idle longer than the timeout are swept by a background task

Lifecycle:
```
create_session  -> sender slot filled
join_session    -> receiver slot filled
leave           -> receiver: slot cleared, sender told "peer-left"
                   sender: session deleted, receiver told "peer-left"
sweep           -> idle beyond timeout -> deleted
```

Expiry is a liveness guarantee only: once two peers have an open peer
channel, nothing here can interrupt it.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..errors import SessionExhausted, SessionFull, SessionNotFound

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
DEFAULT_IDLE_TIMEOUT = 600.0  # 10 minutes
DEFAULT_SWEEP_INTERVAL = 60.0
DEFAULT_MAX_CODE_ATTEMPTS = 100


def generate_code() -> str:
    """Random zero-padded 6-digit code."""
    return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"


@dataclass
class Session:
    """A two-party pairing identified by a short code."""
    code: str
    sender_id: str
    receiver_id: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)

    def has(self, participant_id: str) -> bool:
        return participant_id in (self.sender_id, self.receiver_id)

    def other(self, participant_id: str) -> Optional[str]:
        """The counterpart of ``participant_id``, if attached."""
        if participant_id == self.sender_id:
            return self.receiver_id
        if participant_id == self.receiver_id:
            return self.sender_id
        return None

    def role_of(self, participant_id: str) -> Optional[str]:
        if participant_id == self.sender_id:
            return 'sender'
        if participant_id == self.receiver_id:
            return 'receiver'
        return None

    def idle_seconds(self, now: float) -> float:
        return now - self.last_activity_at

    def is_expired(self, now: float, idle_timeout: float) -> bool:
        return self.idle_seconds(now) > idle_timeout


class SessionDirectory:
    """
    Maps short codes to two-party sessions.

    All mutation goes through create/join/leave/touch/sweep. The directory
    runs on a single event loop, so no locking is needed around the dict.
    """

    def __init__(self, idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
                 sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
                 max_code_attempts: int = DEFAULT_MAX_CODE_ATTEMPTS,
                 code_factory: Callable[[], str] = generate_code,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            idle_timeout: Seconds without activity before a session expires
            sweep_interval: Seconds between background sweeps
            max_code_attempts: Collisions tolerated before giving up
            code_factory: Code generator (injectable for tests)
            clock: Monotonic time source (injectable for tests)
        """
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self.max_code_attempts = max_code_attempts
        self._code_factory = code_factory
        self._clock = clock

        self._sessions: Dict[str, Session] = {}

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    # === Lookup ===

    def get(self, code: str) -> Optional[Session]:
        """Get a live session; expired sessions read as absent."""
        session = self._sessions.get(code)
        if session is None:
            return None
        if session.is_expired(self._clock(), self.idle_timeout):
            return None
        return session

    def session_for(self, participant_id: str) -> Optional[Session]:
        """Find the live session a participant is attached to."""
        for session in self._sessions.values():
            if session.has(participant_id) and self.get(session.code) is session:
                return session
        return None

    def __len__(self) -> int:
        return len(self._sessions)

    def now(self) -> float:
        return self._clock()

    # === Operations ===

    def create_session(self, participant_id: str) -> str:
        """
        Create a session with ``participant_id`` as the sender.

        Returns:
            The new 6-digit code

        Raises:
            SessionExhausted: if every attempt collided with a live session
        """
        for _ in range(self.max_code_attempts):
            code = self._code_factory()
            existing = self._sessions.get(code)
            if existing is not None and self.get(code) is not None:
                continue

            if existing is not None:
                logger.debug(f"Reclaiming expired code {code}")

            now = self._clock()
            self._sessions[code] = Session(
                code=code,
                sender_id=participant_id,
                created_at=now,
                last_activity_at=now,
            )
            logger.info(f"Session {code} created by {participant_id[:8]}")
            return code

        logger.error(f"No free session code after {self.max_code_attempts} attempts")
        raise SessionExhausted(
            f"No free session code after {self.max_code_attempts} attempts"
        )

    def join_session(self, code: str, participant_id: str) -> Session:
        """
        Attach ``participant_id`` as the receiver of session ``code``.

        Raises:
            SessionNotFound: code absent or expired
            SessionFull: receiver slot held by someone else
        """
        session = self.get(code)
        if session is None:
            raise SessionNotFound(f"No active session with code {code}")

        if session.receiver_id == participant_id:
            self.touch(code)
            return session

        if session.receiver_id is not None or session.sender_id == participant_id:
            raise SessionFull(f"Session {code} already has a receiver")

        session.receiver_id = participant_id
        self.touch(code)
        logger.info(f"Session {code} joined by {participant_id[:8]}")
        return session

    def leave(self, code: str, participant_id: str) -> Optional[str]:
        """
        Detach ``participant_id`` from session ``code``.

        A session never outlives its sender: when the sender leaves the
        session is deleted and the receiver is detached with it. When the
        receiver leaves, the slot is freed for someone else to join.

        Returns:
            The other participant (who should be told "peer-left"), or None
        """
        session = self._sessions.get(code)
        if session is None or not session.has(participant_id):
            return None

        if session.sender_id == participant_id:
            remaining = session.receiver_id
            del self._sessions[code]
            logger.info(f"Session {code} closed by its sender")
            return remaining

        session.receiver_id = None
        logger.info(f"{participant_id[:8]} left session {code}")
        return session.sender_id

    def touch(self, code: str):
        """Record activity on a session."""
        session = self._sessions.get(code)
        if session is not None:
            session.last_activity_at = self._clock()

    def sweep(self) -> List[str]:
        """Delete every session idle beyond the timeout."""
        now = self._clock()
        expired = [
            code for code, session in self._sessions.items()
            if session.is_expired(now, self.idle_timeout)
        ]
        for code in expired:
            del self._sessions[code]
            logger.info(f"Session {code} expired")
        return expired

    # === Background sweep ===

    async def start(self):
        """Start the periodic sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        """Stop the periodic sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def get_stats(self) -> dict:
        """Get directory statistics."""
        now = self._clock()
        live = [s for s in self._sessions.values() if not s.is_expired(now, self.idle_timeout)]
        return {
            'active_sessions': len(live),
            'paired_sessions': sum(1 for s in live if s.sender_id and s.receiver_id),
        }
