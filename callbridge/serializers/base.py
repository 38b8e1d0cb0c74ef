"""Base serializer interface for callbridge.

Every telephony provider variant implements this interface. Serializers are
pure message translators with no I/O: they turn webhook payloads into
:class:`CallEvent` objects and convert media socket frames to and from
:class:`AudioFrame` objects.
"""

from __future__ import annotations

import base64
import binascii
import json
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from callbridge.core.events import AudioFrame, CallEvent, MediaFraming


class BaseSerializer(ABC):
    """Abstract base class for telephony provider serializers.

    Inbound media is accepted in both framings regardless of the variant:
    binary messages are raw PCM16, text messages are JSON envelopes of the
    form ``{"event": "media", "media": {"payload": "<base64>"}}``. Outbound
    media uses the variant's default framing unless one is forced.
    """

    default_framing: MediaFraming = MediaFraming.BINARY

    def __init__(self, framing: MediaFraming | str | None = None) -> None:
        self.framing = MediaFraming(framing) if framing else self.default_framing

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this serializer (e.g., 'telnyx')."""
        ...

    @abstractmethod
    def parse_webhook(self, body: dict[str, Any]) -> CallEvent | None:
        """Parse a webhook request body into a call event.

        Returns:
            The event, or None if the payload is not a call event this
            bridge acts on.
        """
        ...

    async def deserialize(self, raw: bytes | str) -> list[AudioFrame]:
        """Parse one media socket message into audio frames.

        Malformed or non-audio messages yield an empty list.
        """
        if isinstance(raw, (bytes, bytearray)):
            return [AudioFrame(data=bytes(raw))]

        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Dropping malformed media message: {raw[:80]!r}")
            return []
        if not isinstance(msg, dict):
            return []

        event = msg.get("event", "")
        if event != "media":
            logger.debug(f"Media socket control message: {event or 'unknown'}")
            return []

        media = msg.get("media")
        payload = media.get("payload", "") if isinstance(media, dict) else ""
        if not payload:
            return []
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, TypeError, ValueError):
            logger.debug("Dropping media message with invalid base64 payload")
            return []
        return [AudioFrame(data=data)]

    async def serialize(self, frame: AudioFrame) -> bytes | str:
        """Convert an outbound audio frame to the configured wire framing."""
        if self.framing is MediaFraming.JSON:
            return json.dumps({
                "event": "media",
                "media": {"payload": base64.b64encode(frame.data).decode("ascii")},
            })
        return frame.data
