"""Realtime speech-AI client.

One RealtimeClient per call. It owns the outbound WebSocket to the AI
provider's realtime API and runs the provider-side state machine:

    CONNECTING -> CONFIGURING -> READY -> (RESPONDING <-> IDLE)* -> CLOSED

The client negotiates the session (``session.update`` / ``session.updated``),
submits the opening turn, requests exactly one spoken response per caller
turn, and hands decoded PCM16 audio deltas to the bridge. Session-level
decisions (stream start, resampling, relaying) belong to the bridge and are
reached through the ``on_ready`` / ``on_audio`` / ``on_closed`` callbacks.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from callbridge.config import AIConfig
from callbridge.session import CallSession
from callbridge.transports.base import BaseTransport


class RealtimeState(str, Enum):
    CONNECTING = "connecting"
    CONFIGURING = "configuring"
    READY = "ready"
    RESPONDING = "responding"
    IDLE = "idle"
    CLOSED = "closed"


# Callbacks into the bridge controller
ReadyCallback = Callable[[CallSession], Awaitable[None]]
AudioCallback = Callable[[CallSession, bytes], Awaitable[None]]
ClosedCallback = Callable[[CallSession], Awaitable[None]]


def build_session_update(config: AIConfig) -> dict[str, Any]:
    """Build the ``session.update`` message for a phone conversation."""
    return {
        "type": "session.update",
        "session": {
            "modalities": list(config.modalities),
            "instructions": config.instructions,
            "voice": config.voice,
            "input_audio_format": config.input_audio_format,
            "output_audio_format": config.output_audio_format,
            "input_audio_transcription": {"model": config.transcription_model},
            "turn_detection": {
                "type": "server_vad",
                "threshold": config.vad_threshold,
                "prefix_padding_ms": config.prefix_padding_ms,
                "silence_duration_ms": config.silence_duration_ms,
                # Responses are requested by the client, one per turn
                "create_response": False,
            },
            "temperature": config.temperature,
            "max_response_output_tokens": config.max_response_output_tokens,
        },
    }


class RealtimeClient:
    """Per-call client for the AI provider's realtime WebSocket API.

    Args:
        session: The call session this client serves.
        transport: Unconnected transport to the AI provider.
        config: AI session settings.
        on_ready: Awaited once when the provider confirms the configuration.
        on_audio: Awaited with each decoded PCM16 audio delta.
        on_closed: Awaited exactly once when the transport goes away.
    """

    def __init__(
        self,
        session: CallSession,
        transport: BaseTransport,
        config: AIConfig,
        on_ready: ReadyCallback | None = None,
        on_audio: AudioCallback | None = None,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self._transport = transport
        self._on_ready = on_ready
        self._on_audio = on_audio
        self._on_closed = on_closed

        self.state = RealtimeState.CONNECTING
        self._recv_task: asyncio.Task | None = None
        self._closed_notified = False
        self.responses_requested = 0

    @property
    def call_id(self) -> str:
        return self.session.call_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect, send the session configuration and start receiving.

        Raises:
            Exception: Whatever the transport raises when the connection fails.
        """
        logger.info(f"Opening AI session for call {self.call_id}")
        await self._transport.connect()
        if self.state is RealtimeState.CLOSED:
            # Call ended while connecting
            await self._transport.disconnect()
            return
        await self._send(build_session_update(self.config))
        self.state = RealtimeState.CONFIGURING
        self._recv_task = asyncio.create_task(self._receive_loop())

    async def close(self) -> None:
        """Close the AI transport. Does not fire ``on_closed``."""
        if self.state is RealtimeState.CLOSED:
            return
        self.state = RealtimeState.CLOSED
        self._closed_notified = True
        try:
            await self._transport.disconnect()
        except Exception as e:
            logger.warning(f"Error closing AI transport for call {self.call_id}: {e}")

        task = self._recv_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"AI session closed for call {self.call_id}")

    @property
    def is_ready(self) -> bool:
        return self.state in (RealtimeState.READY, RealtimeState.RESPONDING, RealtimeState.IDLE)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> None:
        await self._transport.send(json.dumps(message))

    async def append_audio(self, pcm16: bytes) -> None:
        """Append caller audio (at the AI rate) to the provider's input buffer."""
        if not pcm16 or not self.is_ready:
            return
        try:
            await self._send({
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(pcm16).decode("ascii"),
            })
        except ConnectionError as e:
            logger.debug(f"AI transport gone, dropping caller audio for {self.call_id}: {e}")

    async def request_response(self) -> bool:
        """Ask for a spoken response unless one is already in flight.

        Returns True if ``response.create`` was sent.
        """
        async with self.session.lock:
            claimed = self.session.begin_turn()
        if not claimed:
            logger.debug(f"Response already in flight for call {self.call_id}, suppressing")
            return False

        self.state = RealtimeState.RESPONDING
        self.responses_requested += 1
        await self._send({
            "type": "response.create",
            "response": {"modalities": list(self.config.modalities)},
        })
        logger.info(f"Requested AI response for call {self.call_id}")
        return True

    async def send_greeting(self) -> None:
        """Submit the opening conversational turn and request its response."""
        if not self.config.greeting:
            return
        await self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": self.config.greeting}],
            },
        })
        await self.request_response()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        try:
            while True:
                raw = await self._transport.recv()
                await self.handle_message(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionError as e:
            logger.info(f"AI transport closed for call {self.call_id}: {e}")
        except Exception as e:
            logger.exception(f"AI receive loop failed for call {self.call_id}: {e}")
        finally:
            await self._notify_closed()

    async def _notify_closed(self) -> None:
        if self._closed_notified:
            return
        self._closed_notified = True
        self.state = RealtimeState.CLOSED
        if self._on_closed:
            await self._on_closed(self.session)

    async def handle_message(self, raw: bytes | str) -> None:
        """Dispatch one provider event. Malformed messages are dropped."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.warning(f"Dropping malformed AI message for call {self.call_id}")
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get("type", "")

        if msg_type == "session.updated":
            await self._handle_session_updated()

        elif msg_type == "conversation.item.created":
            await self._handle_item_created(message.get("item") or {})

        elif msg_type == "response.audio.delta":
            await self._handle_audio_delta(message.get("delta", ""))

        elif msg_type == "response.done":
            async with self.session.lock:
                self.session.end_turn()
            if self.state is RealtimeState.RESPONDING:
                self.state = RealtimeState.IDLE
            logger.info(f"AI response complete for call {self.call_id}")

        elif msg_type == "response.audio_transcript.done":
            logger.info(f"AI said ({self.call_id}): {message.get('transcript', '')}")

        elif msg_type == "conversation.item.input_audio_transcription.completed":
            logger.info(f"Caller said ({self.call_id}): {message.get('transcript', '')}")

        elif msg_type == "conversation.item.input_audio_transcription.failed":
            logger.warning(f"Caller transcription failed for call {self.call_id}")

        elif msg_type == "input_audio_buffer.speech_started":
            logger.debug(f"Caller started speaking on call {self.call_id}")

        elif msg_type == "input_audio_buffer.speech_stopped":
            logger.debug(f"Caller stopped speaking on call {self.call_id}")

        elif msg_type == "error":
            logger.error(f"AI provider error for call {self.call_id}: {message.get('error', message)}")

        else:
            logger.trace(f"Unhandled AI event for call {self.call_id}: {msg_type}")

    async def _handle_session_updated(self) -> None:
        if self.state is not RealtimeState.CONFIGURING:
            logger.debug(f"Ignoring repeated session.updated for call {self.call_id}")
            return
        self.state = RealtimeState.READY
        logger.info(f"AI session configured for call {self.call_id}")
        if self._on_ready:
            await self._on_ready(self.session)
        await self.send_greeting()

    async def _handle_item_created(self, item: dict[str, Any]) -> None:
        if item.get("role") != "user":
            return
        await self.request_response()

    async def _handle_audio_delta(self, delta: str) -> None:
        if not delta:
            return
        try:
            pcm16 = base64.b64decode(delta, validate=True)
        except (binascii.Error, TypeError, ValueError):
            logger.warning(f"Dropping undecodable audio delta for call {self.call_id}")
            return
        if self._on_audio:
            await self._on_audio(self.session, pcm16)
