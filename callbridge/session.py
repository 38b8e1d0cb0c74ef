"""Call session management for callbridge.

Each active call gets a CallSession that tracks its lifecycle phase, the
readiness of both legs, the attached media relay, the AI turn guard and the
audio pipeline. The SessionRegistry owns all live sessions, keyed by the
telephony call id.

Every mutation of a session happens while holding ``session.lock``. Holders
must not await network I/O inside the lock; they collect what needs to be
sent and do it after releasing.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, AsyncIterator

from loguru import logger

from callbridge.audio.resampler import Resampler

if TYPE_CHECKING:
    from callbridge.ai.realtime import RealtimeClient
    from callbridge.telephony.relay import MediaRelay


class CallPhase(IntEnum):
    """Call lifecycle phases, in the only order they may be visited."""

    INITIATED = 1
    ANSWERING = 2
    STREAM_PENDING = 3
    STREAMING = 4
    CLOSED = 5


@dataclass
class CallSession:
    """Represents a single active call flowing through the bridge."""

    call_id: str
    # Opaque token for call-control actions against this call
    control_handle: str = ""

    phase: CallPhase = CallPhase.INITIATED
    ai_ready: bool = False

    # Legs
    ai_client: RealtimeClient | None = None
    media: MediaRelay | None = None

    # Deferred media stream start (call answered before the AI was ready)
    pending_stream_start: bool = False
    pending_control_handle: str = ""

    # At most one AI response in flight
    has_active_turn: bool = False

    # Outbound audio held while no media relay is attached
    outbound_queue_size: int = 500
    _outbound_audio_queue: deque[bytes] = field(default_factory=deque)

    # Call metadata
    from_number: str = ""
    to_number: str = ""
    provider: str = ""

    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    # Counters
    audio_bytes_in: int = 0
    audio_bytes_out: int = 0
    dropped_inbound_frames: int = 0
    dropped_outbound_frames: int = 0

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    # Resamplers (configured by the registry)
    _inbound_resampler: Resampler | None = None
    _outbound_resampler: Resampler | None = None

    # Timers owned by the session (readiness timeout, media grace period)
    _tasks: list[asyncio.Task] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.phase is not CallPhase.CLOSED

    def advance(self, phase: CallPhase) -> bool:
        """Move the call forward to ``phase``.

        Returns False (and leaves the phase untouched) when ``phase`` is not
        ahead of the current one.
        """
        if phase <= self.phase:
            logger.debug(
                f"Call {self.call_id}: ignoring transition "
                f"{self.phase.name} -> {phase.name}"
            )
            return False
        logger.info(f"Call {self.call_id}: {self.phase.name} -> {phase.name}")
        self.phase = phase
        return True

    def mark_pending_stream(self, control_handle: str) -> None:
        """Defer the media stream start until the AI session is ready."""
        self.pending_stream_start = True
        self.pending_control_handle = control_handle

    def consume_pending_stream(self) -> str | None:
        """Take the deferred stream start, if any. Returns its control handle."""
        if not self.pending_stream_start:
            return None
        handle = self.pending_control_handle or self.control_handle
        self.pending_stream_start = False
        self.pending_control_handle = ""
        return handle

    def add_task(self, task: asyncio.Task) -> None:
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(task)

    def end(self) -> None:
        """Mark the session as ended and cancel its timers."""
        self.phase = CallPhase.CLOSED
        self.ended_at = time.time()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()

    @property
    def duration_ms(self) -> int:
        """Call duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)

    # ------------------------------------------------------------------
    # AI turn guard
    # ------------------------------------------------------------------

    def begin_turn(self) -> bool:
        """Claim the turn slot. Returns False if a response is already in flight."""
        if self.has_active_turn:
            return False
        self.has_active_turn = True
        return True

    def end_turn(self) -> None:
        self.has_active_turn = False

    # ------------------------------------------------------------------
    # Media relay attachment
    # ------------------------------------------------------------------

    def attach_media(self, relay: MediaRelay) -> list[bytes]:
        """Bind a media relay and hand back the buffered outbound audio in order."""
        self.media = relay
        drained = list(self._outbound_audio_queue)
        self._outbound_audio_queue.clear()
        return drained

    def detach_media(self, relay: MediaRelay) -> bool:
        """Unbind ``relay`` if it is the one currently attached."""
        if self.media is not relay:
            return False
        self.media = None
        return True

    def enqueue_outbound(self, data: bytes) -> bool:
        """Buffer outbound audio while no relay is attached.

        Returns False and drops the frame once the queue is full.
        """
        if len(self._outbound_audio_queue) >= self.outbound_queue_size:
            self.dropped_outbound_frames += 1
            if self.dropped_outbound_frames == 1:
                logger.warning(
                    f"Call {self.call_id}: outbound audio queue full "
                    f"({self.outbound_queue_size} frames), dropping audio"
                )
            return False
        self._outbound_audio_queue.append(data)
        return True

    @property
    def queued_outbound_frames(self) -> int:
        return len(self._outbound_audio_queue)

    # ------------------------------------------------------------------
    # Audio conversion
    # ------------------------------------------------------------------

    def setup_resamplers(self, telephony_rate: int, ai_rate: int) -> None:
        """Configure resamplers for the audio pipeline.

        Args:
            telephony_rate: Sample rate on the telephony leg (e.g., 8000).
            ai_rate: Sample rate expected by the AI provider (e.g., 24000).
        """
        if telephony_rate != ai_rate:
            self._inbound_resampler = Resampler(telephony_rate, ai_rate)
            self._outbound_resampler = Resampler(ai_rate, telephony_rate)

    def convert_inbound_audio(self, data: bytes) -> bytes:
        """Convert caller audio to the AI provider's rate."""
        if self._inbound_resampler:
            return self._inbound_resampler.process(data)
        return data

    def convert_outbound_audio(self, data: bytes) -> bytes:
        """Convert AI audio to the telephony rate."""
        if self._outbound_resampler:
            return self._outbound_resampler.process(data)
        return data

    def snapshot(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "phase": self.phase.name.lower(),
            "provider": self.provider,
            "from_number": self.from_number,
            "to_number": self.to_number,
            "ai_ready": self.ai_ready,
            "media_attached": self.media is not None,
            "has_active_turn": self.has_active_turn,
            "duration_ms": self.duration_ms,
            "audio_bytes_in": self.audio_bytes_in,
            "audio_bytes_out": self.audio_bytes_out,
            "dropped_inbound_frames": self.dropped_inbound_frames,
            "dropped_outbound_frames": self.dropped_outbound_frames,
        }


class SessionRegistry:
    """Process-wide store of live call sessions keyed by call id."""

    def __init__(
        self,
        telephony_rate: int = 8000,
        ai_rate: int = 24000,
        outbound_queue_size: int = 500,
    ) -> None:
        self._sessions: dict[str, CallSession] = {}
        self._telephony_rate = telephony_rate
        self._ai_rate = ai_rate
        self._outbound_queue_size = outbound_queue_size

    def create(self, call_id: str, control_handle: str = "", **kwargs: Any) -> CallSession:
        """Create and store a new session.

        Raises:
            ValueError: If a session for ``call_id`` already exists.
        """
        if not call_id:
            raise ValueError("call_id is required")
        if call_id in self._sessions:
            raise ValueError(f"Session already exists for call {call_id}")
        session = CallSession(
            call_id=call_id,
            control_handle=control_handle,
            outbound_queue_size=self._outbound_queue_size,
            **kwargs,
        )
        session.setup_resamplers(self._telephony_rate, self._ai_rate)
        self._sessions[call_id] = session
        logger.info(f"Session created for call {call_id}")
        return session

    def get(self, call_id: str) -> CallSession | None:
        """Get a session by call id."""
        return self._sessions.get(call_id)

    def remove(self, call_id: str) -> CallSession | None:
        """Remove a session from the registry. Removing twice is a no-op."""
        session = self._sessions.pop(call_id, None)
        if session:
            logger.info(
                f"Session removed for call {call_id} "
                f"(duration: {session.duration_ms}ms)"
            )
        return session

    def claim_unattached(self) -> CallSession | None:
        """First live session that has no media relay attached, if any."""
        for session in self._sessions.values():
            if session.is_active and session.media is None:
                return session
        return None

    @asynccontextmanager
    async def locked(self, call_id: str) -> AsyncIterator[CallSession | None]:
        """Hold the lock of ``call_id``'s session for an atomic mutation.

        Yields None when the call has no live session.
        """
        session = self._sessions.get(call_id)
        if session is None:
            yield None
            return
        async with session.lock:
            yield session if session.is_active else None

    @property
    def active_count(self) -> int:
        """Number of live sessions."""
        return sum(1 for s in self._sessions.values() if s.is_active)

    @property
    def all_sessions(self) -> list[CallSession]:
        return list(self._sessions.values())

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
