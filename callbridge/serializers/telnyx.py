"""Telnyx Call Control serializer.

Telnyx delivers call lifecycle webhooks as::

    {"data": {"event_type": "call.initiated",
              "payload": {"call_control_id": "...", "call_session_id": "...",
                          "from": "+1555...", "to": "+1555..."}}}

The call control id doubles as the call identifier (falling back to the
call session id) and as the handle for call-control actions. Outbound
media is written as raw binary PCM16 frames.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from callbridge.core.events import CallEvent, CallEventType, MediaFraming
from callbridge.serializers.base import BaseSerializer


class TelnyxSerializer(BaseSerializer):
    """Serializer for Telnyx call-control webhooks and media streams."""

    default_framing = MediaFraming.BINARY

    @property
    def name(self) -> str:
        return "telnyx"

    def parse_webhook(self, body: dict[str, Any]) -> CallEvent | None:
        data = body.get("data")
        if not isinstance(data, dict):
            logger.warning("Telnyx webhook without a data object")
            return None

        raw_type = data.get("event_type", "")
        try:
            event_type = CallEventType(raw_type)
        except ValueError:
            logger.info(f"Unhandled Telnyx event type: {raw_type}")
            return None

        payload = data.get("payload") or {}
        control_handle = payload.get("call_control_id", "")
        call_id = control_handle or payload.get("call_session_id", "")
        if not call_id:
            logger.warning(f"Telnyx {raw_type} event without a call identifier")
            return None

        return CallEvent(
            event_type=event_type,
            call_id=call_id,
            control_handle=control_handle,
            from_number=str(payload.get("from", "")),
            to_number=str(payload.get("to", "")),
            provider=self.name,
            payload=payload,
        )
