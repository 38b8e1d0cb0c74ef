"""Voximplant scenario serializer.

A VoxEngine scenario answers the call itself and posts flat webhooks::

    {"event": "CallStarted", "callId": "...", "callerId": "...", "calleeId": "..."}

``CallStarted``, ``CallConnected`` and ``CallDisconnected`` map onto the
initiated, answered and hangup events; ``MediaStreamStarted`` and
``MediaStreamEnded`` are informational. The scenario opens the media socket
on its own and exchanges audio as JSON envelopes with base64 payloads.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from callbridge.core.events import CallEvent, CallEventType, MediaFraming
from callbridge.serializers.base import BaseSerializer

_EVENT_MAP = {
    "CallStarted": CallEventType.CALL_INITIATED,
    "CallConnected": CallEventType.CALL_ANSWERED,
    "CallDisconnected": CallEventType.CALL_HANGUP,
    "MediaStreamStarted": CallEventType.MEDIA_STREAM_STARTED,
    "MediaStreamEnded": CallEventType.MEDIA_STREAM_ENDED,
}


class VoximplantSerializer(BaseSerializer):
    """Serializer for Voximplant VoxEngine scenario webhooks and media."""

    default_framing = MediaFraming.JSON

    @property
    def name(self) -> str:
        return "voximplant"

    def parse_webhook(self, body: dict[str, Any]) -> CallEvent | None:
        raw_type = body.get("event", "")
        event_type = _EVENT_MAP.get(raw_type)
        if event_type is None:
            logger.info(f"Unhandled Voximplant event: {raw_type}")
            return None

        call_id = str(body.get("callId") or body.get("sessionId") or "")
        if not call_id:
            logger.warning(f"Voximplant {raw_type} event without a call identifier")
            return None

        return CallEvent(
            event_type=event_type,
            call_id=call_id,
            # Call control is performed by the scenario; the id is the only handle
            control_handle=call_id,
            from_number=str(body.get("callerId", "")),
            to_number=str(body.get("calleeId", "")),
            provider=self.name,
            payload=body,
        )
