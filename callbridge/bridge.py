"""CallBridge - Central bridge controller.

The CallBridge class is the heart of callbridge. It wires together:
- Telephony webhook events (call lifecycle)
- Call-control actions (answer, start media stream)
- One realtime AI client per call
- One media relay per call (telephony audio socket)
- The session registry

Per call it runs the lifecycle

    INITIATED -> ANSWERING -> STREAM_PENDING -> STREAMING -> CLOSED

and reconciles the two readiness signals, "call answered" and "AI session
configured". Whichever arrives second starts the media stream, so the
stream is started exactly once per call.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from callbridge.ai.realtime import RealtimeClient
from callbridge.config import BridgeConfig, load_config
from callbridge.core.events import CallEvent, CallEventType
from callbridge.serializers.base import BaseSerializer
from callbridge.serializers.registry import serializer_registry
from callbridge.session import CallPhase, CallSession, SessionRegistry
from callbridge.telephony.control import CallControlClient
from callbridge.telephony.relay import MediaRelay
from callbridge.transports.base import BaseTransport
from callbridge.transports.websocket import WebSocketClientTransport

# Type for event handler callbacks
EventHandler = Callable[..., Awaitable[Any]]
TransportFactory = Callable[[], BaseTransport]


class CallBridge:
    """Bridge between telephony calls and realtime speech-AI sessions.

    Usage:
        bridge = CallBridge("bridge.yaml")

        @bridge.on_call_start
        async def handle_call(session):
            print(f"Call from {session.from_number}")

        # feed webhook bodies and media sockets from the HTTP server
        await bridge.handle_webhook(body)
        await bridge.handle_media_connection(transport, call_id)
    """

    def __init__(
        self,
        config: BridgeConfig | dict | str | Path | None = None,
        control: CallControlClient | None = None,
        serializer: BaseSerializer | None = None,
        ai_transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = load_config(config)
        self.sessions = SessionRegistry(
            telephony_rate=self.config.audio.telephony_sample_rate,
            ai_rate=self.config.audio.ai_sample_rate,
            outbound_queue_size=self.config.audio.outbound_queue_size,
        )
        self.serializer = serializer or serializer_registry.create(
            self.config.telephony.provider,
            framing=self.config.media.framing or None,
        )
        self.control = control or CallControlClient(
            api_key=self.config.telephony.api_key,
            api_base=self.config.telephony.api_base,
            timeout_seconds=self.config.telephony.request_timeout_seconds,
        )
        self._ai_transport_factory = ai_transport_factory or self._default_ai_transport

        # Event handlers
        self._handlers: dict[str, list[EventHandler]] = {
            "on_call_start": [],
            "on_call_end": [],
            "on_event": [],  # catch-all
        }

    # ------------------------------------------------------------------
    # Decorator API for event handlers
    # ------------------------------------------------------------------

    def on_call_start(self, fn: EventHandler) -> EventHandler:
        """Register a handler for calls whose AI session has been opened.

        The handler receives (session: CallSession).
        """
        self._handlers["on_call_start"].append(fn)
        return fn

    def on_call_end(self, fn: EventHandler) -> EventHandler:
        """Register a handler for torn-down calls.

        The handler receives (session: CallSession, reason: str).
        """
        self._handlers["on_call_end"].append(fn)
        return fn

    def on_event(self, fn: EventHandler) -> EventHandler:
        """Register a catch-all handler for webhook call events.

        The handler receives (event: CallEvent).
        """
        self._handlers["on_event"].append(fn)
        return fn

    async def _dispatch(self, name: str, *args: Any) -> None:
        for handler in self._handlers[name]:
            try:
                await handler(*args)
            except Exception as e:
                logger.error(f"{name} handler error: {e}")

    def _default_ai_transport(self) -> BaseTransport:
        return WebSocketClientTransport(
            self.config.ai.connect_url,
            headers={
                "Authorization": f"Bearer {self.config.ai.api_key}",
                "OpenAI-Beta": "realtime=v1",
            },
        )

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def handle_webhook(self, body: dict[str, Any]) -> CallEvent | None:
        """Parse and process one webhook body. Never raises."""
        try:
            event = self.serializer.parse_webhook(body)
        except Exception as e:
            logger.error(f"Could not parse webhook body: {e}")
            return None
        if event is None:
            return None
        try:
            await self.handle_event(event)
        except Exception as e:
            logger.exception(f"Error handling {event.event_type.value} for call {event.call_id}: {e}")
        return event

    async def handle_event(self, event: CallEvent) -> None:
        """Drive the call lifecycle from a telephony call event."""
        logger.info(f"Telephony event {event.event_type.value} for call {event.call_id}")
        await self._dispatch("on_event", event)

        if event.event_type is CallEventType.CALL_INITIATED:
            await self.handle_call_initiated(event)
        elif event.event_type is CallEventType.CALL_ANSWERED:
            await self.handle_call_answered(event)
        elif event.is_terminal:
            await self.hangup(event.call_id, reason=event.event_type.value)
        else:
            logger.info(f"Media stream event {event.event_type.value} for call {event.call_id}")

    async def handle_call_initiated(self, event: CallEvent) -> None:
        """Create the session, answer the call and open the AI session."""
        if event.call_id in self.sessions:
            logger.warning(f"Duplicate call.initiated for call {event.call_id}, ignoring")
            return

        session = self.sessions.create(
            event.call_id,
            event.control_handle,
            from_number=event.from_number,
            to_number=event.to_number,
            provider=event.provider,
        )

        await self.control.answer(session.control_handle)
        if not session.is_active:
            return

        ai_client = RealtimeClient(
            session,
            self._ai_transport_factory(),
            self.config.ai,
            on_ready=self._on_ai_ready,
            on_audio=self._on_ai_audio,
            on_closed=self._on_ai_closed,
        )
        session.ai_client = ai_client
        try:
            await ai_client.open()
        except Exception as e:
            logger.error(f"Could not open AI session for call {session.call_id}: {e}")
            await self._fail_call(session, reason="ai_connect_failed")
            return

        async with self.sessions.locked(session.call_id) as live:
            if live is not session:
                return
            session.advance(CallPhase.ANSWERING)
        await self._dispatch("on_call_start", session)

    async def handle_call_answered(self, event: CallEvent) -> None:
        """Start the media stream now, or defer it until the AI is ready."""
        start_handle: str | None = None
        async with self.sessions.locked(event.call_id) as session:
            if session is None:
                logger.warning(f"call.answered for unknown call {event.call_id}")
                return
            if session.phase >= CallPhase.STREAM_PENDING:
                logger.debug(f"Repeated call.answered for call {event.call_id}, ignoring")
                return

            handle = event.control_handle or session.control_handle
            if session.ai_ready:
                session.advance(CallPhase.STREAMING)
                start_handle = handle
            else:
                logger.info(f"AI session not ready for call {event.call_id}, deferring media stream")
                session.mark_pending_stream(handle)
                session.advance(CallPhase.STREAM_PENDING)
                session.add_task(asyncio.create_task(self._ready_timeout(session)))

        if start_handle is not None:
            await self._start_media_stream(session, start_handle)

    # ------------------------------------------------------------------
    # Readiness reconciliation
    # ------------------------------------------------------------------

    async def _on_ai_ready(self, session: CallSession) -> None:
        start_handle: str | None = None
        async with self.sessions.locked(session.call_id) as live:
            if live is not session:
                return
            session.ai_ready = True
            if session.phase is CallPhase.STREAM_PENDING:
                start_handle = session.consume_pending_stream()
                if start_handle is not None:
                    session.advance(CallPhase.STREAMING)

        if start_handle is not None:
            logger.info(f"Starting deferred media stream for call {session.call_id}")
            await self._start_media_stream(session, start_handle)

    async def _ready_timeout(self, session: CallSession) -> None:
        await asyncio.sleep(self.config.ai.ready_timeout_seconds)
        start_handle: str | None = None
        async with self.sessions.locked(session.call_id) as live:
            if live is not session or session.phase is not CallPhase.STREAM_PENDING:
                return
            start_handle = session.consume_pending_stream()
            if start_handle is None:
                return
            logger.warning(
                f"AI session for call {session.call_id} not ready after "
                f"{self.config.ai.ready_timeout_seconds}s, starting media stream anyway"
            )
            session.advance(CallPhase.STREAMING)
        await self._start_media_stream(session, start_handle)

    async def _start_media_stream(self, session: CallSession, control_handle: str) -> None:
        await self.control.start_media_stream(
            control_handle,
            self.config.media_stream_url(session.call_id),
            stream_track=self.config.telephony.stream_track,
        )

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    async def _on_ai_audio(self, session: CallSession, pcm16: bytes) -> None:
        """Downsample AI audio and relay it, or buffer it until a relay attaches."""
        audio = session.convert_outbound_audio(pcm16)
        if not audio:
            return
        async with session.lock:
            if not session.is_active:
                return
            if session.media is not None:
                session.media.send_audio(audio)
            else:
                session.enqueue_outbound(audio)

    # ------------------------------------------------------------------
    # Media socket
    # ------------------------------------------------------------------

    async def handle_media_connection(
        self,
        transport: BaseTransport,
        call_id: str | None = None,
    ) -> None:
        """Bind a telephony media socket to its call and relay until it closes."""
        session = self._resolve_media_session(call_id)
        if session is None:
            await transport.disconnect()
            return

        relay = MediaRelay(
            transport,
            self.serializer,
            session,
            sample_rate=self.config.audio.telephony_sample_rate,
            send_queue_size=self.config.media.send_queue_size,
            on_closed=self._on_media_closed,
        )
        replaced: MediaRelay | None = None
        async with session.lock:
            if not session.is_active:
                rejected = True
            elif session.media is not None and not call_id:
                # Lost the fallback race to another socket
                rejected = True
            else:
                rejected = False
                replaced = session.media
                for pcm16 in session.attach_media(relay):
                    relay.send_audio(pcm16)
        if rejected:
            logger.warning(f"Rejecting media socket for call {session.call_id}")
            await transport.disconnect()
            return

        if replaced is not None:
            logger.warning(f"New media socket replaces the previous one for call {session.call_id}")
            await replaced.close()

        logger.info(f"Media relay attached to call {session.call_id}")
        await relay.run()

    def _resolve_media_session(self, call_id: str | None) -> CallSession | None:
        if call_id:
            session = self.sessions.get(call_id)
            if session is None or not session.is_active:
                logger.warning(f"No session for media socket call_id={call_id}")
                return None
            return session

        if not self.config.media.allow_unbound_fallback:
            logger.error("Media socket without call_id rejected")
            return None

        session = self.sessions.claim_unattached()
        if session is None:
            logger.error("Media socket without call_id and no unattached session")
            return None
        logger.warning(
            f"Media socket without call_id bound to call {session.call_id} "
            f"(first session without a relay)"
        )
        return session

    async def _on_media_closed(self, relay: MediaRelay) -> None:
        session = relay.session
        async with session.lock:
            detached = session.detach_media(relay)
            live = session.is_active
        if not detached or not live:
            return
        logger.info(
            f"Media relay detached from call {session.call_id}; hanging up in "
            f"{self.config.media.close_grace_seconds}s unless it reconnects"
        )
        session.add_task(asyncio.create_task(self._media_close_grace(session)))

    async def _media_close_grace(self, session: CallSession) -> None:
        await asyncio.sleep(self.config.media.close_grace_seconds)
        if session.media is None and self.sessions.get(session.call_id) is session:
            logger.warning(f"No hangup after media socket closed, ending call {session.call_id}")
            await self.hangup(session.call_id, reason="media_closed")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _on_ai_closed(self, session: CallSession) -> None:
        if session.is_active:
            logger.warning(f"AI session dropped for call {session.call_id}")
            await self._fail_call(session, reason="ai_closed")

    async def _fail_call(self, session: CallSession, reason: str) -> None:
        """Tear down a call whose AI leg is gone, telling the caller if configured."""
        if not session.is_active:
            logger.debug(f"Call {session.call_id} already ended, not reporting {reason}")
            return
        handle = session.control_handle
        if self.config.telephony.failure_message:
            await self.control.speak(handle, self.config.telephony.failure_message)
        if self.config.telephony.hangup_on_ai_failure:
            await self.control.hangup(handle)
        await self.hangup(session.call_id, reason=reason)

    async def hangup(self, call_id: str, reason: str = "hangup") -> bool:
        """Tear the call down: close both legs and drop the session.

        Returns True if this call performed the teardown; a repeated or
        unknown call id is a no-op returning False.
        """
        session = self.sessions.get(call_id)
        if session is None:
            logger.debug(f"Hangup for unknown or finished call {call_id}, nothing to do")
            return False

        async with session.lock:
            if not session.is_active:
                return False
            session.advance(CallPhase.CLOSED)
            session.end()
            self.sessions.remove(call_id)
            ai_client, media = session.ai_client, session.media
            session.media = None

        if ai_client is not None:
            await ai_client.close()
        if media is not None:
            await media.close()

        logger.info(f"Call {call_id} torn down ({reason}, {session.duration_ms}ms)")
        await self._dispatch("on_call_end", session, reason)
        return True

    async def shutdown(self) -> None:
        """Tear down every live call and release the call-control client."""
        for session in self.sessions.all_sessions:
            await self.hangup(session.call_id, reason="shutdown")
        await self.control.close()
