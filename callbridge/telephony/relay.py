"""Telephony media relay.

A MediaRelay wraps one media socket opened by the telephony provider and
bound to a call session. It runs two loops:

- inbound: media socket -> serializer -> upsample -> AI client
- outbound: send queue -> serializer -> media socket

Outbound audio goes through a single writer task so frames leave in the
order they were queued, no matter which coroutine queued them.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger

from callbridge.core.events import AudioFrame
from callbridge.serializers.base import BaseSerializer
from callbridge.session import CallSession
from callbridge.transports.base import BaseTransport

RelayClosedCallback = Callable[["MediaRelay"], Awaitable[None]]


class MediaRelay:
    """Binary audio channel between the bridge and the telephony provider."""

    def __init__(
        self,
        transport: BaseTransport,
        serializer: BaseSerializer,
        session: CallSession,
        sample_rate: int = 8000,
        send_queue_size: int = 1000,
        on_closed: RelayClosedCallback | None = None,
    ) -> None:
        self.transport = transport
        self.serializer = serializer
        self.session = session
        self.sample_rate = sample_rate
        self._on_closed = on_closed
        self._send_queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=send_queue_size)
        self._writer_task: asyncio.Task | None = None
        self._closed = False

    @property
    def call_id(self) -> str:
        return self.session.call_id

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_audio(self, pcm16: bytes) -> bool:
        """Queue telephony-rate PCM16 audio for the caller. Never blocks.

        Returns False if the relay is closed or its send queue is full.
        """
        if self._closed or not pcm16:
            return False
        try:
            self._send_queue.put_nowait(pcm16)
        except asyncio.QueueFull:
            self.session.dropped_outbound_frames += 1
            logger.warning(f"Media send queue full for call {self.call_id}, dropping frame")
            return False
        return True

    async def _writer_loop(self) -> None:
        while True:
            pcm16 = await self._send_queue.get()
            try:
                wire_msg = await self.serializer.serialize(
                    AudioFrame(call_id=self.call_id, sample_rate=self.sample_rate, data=pcm16)
                )
                await self.transport.send(wire_msg)
            except ConnectionError as e:
                logger.info(f"Media socket rejected outbound audio for call {self.call_id}: {e}")
                self._closed = True
                return
            except Exception as e:
                logger.exception(f"Media writer failed for call {self.call_id}: {e}")
                # Stops the read loop too, so the relay detaches
                await self.close()
                return
            self.session.audio_bytes_out += len(pcm16)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_inbound(self, data: bytes) -> None:
        """Forward one caller audio frame to the AI leg.

        Frames arriving before the AI session is ready are dropped, not buffered.
        """
        if not data:
            return
        session = self.session
        ai_client = session.ai_client
        if not session.ai_ready or ai_client is None:
            session.dropped_inbound_frames += 1
            return

        session.audio_bytes_in += len(data)
        await ai_client.append_audio(session.convert_inbound_audio(data))

    async def run(self) -> None:
        """Relay until the media socket closes, then detach from the session."""
        self._writer_task = asyncio.create_task(self._writer_loop())
        logger.info(f"Media relay running for call {self.call_id}")
        try:
            while not self._closed:
                raw = await self.transport.recv()
                for frame in await self.serializer.deserialize(raw):
                    await self.handle_inbound(frame.data)
        except ConnectionError as e:
            logger.info(f"Media socket closed for call {self.call_id}: {e}")
        except Exception as e:
            logger.exception(f"Media relay error for call {self.call_id}: {e}")
        finally:
            await self._shutdown()
            if self._on_closed:
                await self._on_closed(self)

    async def _shutdown(self) -> None:
        self._closed = True
        task = self._writer_task
        if task is None:
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        elif not task.cancelled() and task.exception() is not None:
            logger.error(f"Media writer for call {self.call_id} ended with: {task.exception()!r}")

    async def close(self) -> None:
        """Close the media socket. ``run`` detaches and returns afterwards."""
        self._closed = True
        await self.transport.disconnect()
