"""Unified event model for callbridge.

Telephony serializers translate provider webhook payloads and media socket
frames into these canonical events. The bridge controller drives the call
lifecycle from them.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class CallEventType(str, Enum):
    CALL_INITIATED = "call.initiated"
    CALL_ANSWERED = "call.answered"
    CALL_HANGUP = "call.hangup"
    CALL_BRIDGED = "call.bridged"
    MEDIA_STREAM_STARTED = "media.stream.started"
    MEDIA_STREAM_ENDED = "media.stream.ended"


# Events after which the call is over from the bridge's point of view
TERMINAL_EVENT_TYPES = frozenset({CallEventType.CALL_HANGUP, CallEventType.CALL_BRIDGED})


class MediaFraming(str, Enum):
    """Wire framing for outbound audio on the telephony media socket."""

    BINARY = "binary"
    JSON = "json"


class CallEvent(BaseModel):
    """A call-control event delivered by the telephony webhook."""

    event_type: CallEventType
    call_id: str
    control_handle: str = ""
    from_number: str = ""
    to_number: str = ""
    provider: str = ""
    timestamp: float = Field(default_factory=time.time)
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES


class AudioFrame(BaseModel):
    """A chunk of PCM16 mono audio crossing the telephony media socket."""

    call_id: str = ""
    sample_rate: int = 8000
    data: bytes = b""
    timestamp: float = Field(default_factory=time.time)
