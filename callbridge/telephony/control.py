"""Telephony call-control client for callbridge.

Issues the imperative actions the bridge needs against a live call
(answer, start media streaming, speak, hang up) through the provider's
REST API. Actions are fire-and-log: failures are logged and reported as a
False return value, never raised to the caller.

Usage:
    control = CallControlClient(api_key="KEY...", api_base="https://api.telnyx.com/v2")
    await control.answer(call_control_id)
    await control.start_media_stream(call_control_id, "wss://host/media-stream-ws?call_id=...")
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import aiohttp
from loguru import logger

DEFAULT_API_BASE = "https://api.telnyx.com/v2"


class CallControlError(Exception):
    """A call-control request was rejected or could not be delivered."""

    def __init__(self, action: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{action} failed: {message}")
        self.action = action
        self.status = status


class CallControlClient:
    """Client for the telephony provider's call-control REST API.

    Without an API key every action is skipped: scenario-driven providers
    answer and stream on their own.
    """

    def __init__(
        self,
        api_key: str = "",
        api_base: str = DEFAULT_API_BASE,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create an aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._session

    async def _post_action(
        self,
        control_handle: str,
        action: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST a call action and return the decoded response body.

        Raises:
            CallControlError: On transport failures and non-2xx responses.
        """
        url = f"{self.api_base}/calls/{quote(control_handle, safe='')}/actions/{action}"
        session = await self._get_session()
        try:
            async with session.post(url, json=body or {}) as resp:
                if resp.status >= 300:
                    error = await resp.text()
                    raise CallControlError(action, error, status=resp.status)
                if resp.content_type == "application/json":
                    return await resp.json()
                return {}
        except aiohttp.ClientError as e:
            raise CallControlError(action, str(e)) from e
        except asyncio.TimeoutError as e:
            raise CallControlError(action, "request timed out") from e

    async def _run(self, control_handle: str, action: str, body: dict[str, Any] | None = None) -> bool:
        if not self.enabled:
            logger.debug(f"Call control disabled, skipping {action} for {control_handle}")
            return False
        if not control_handle:
            logger.warning(f"No control handle, cannot {action}")
            return False
        try:
            await self._post_action(control_handle, action, body)
        except CallControlError as e:
            logger.error(f"Call control {action} for {control_handle}: {e}")
            return False
        logger.info(f"Call control {action} sent for {control_handle}")
        return True

    async def answer(self, control_handle: str) -> bool:
        """Answer an inbound call."""
        return await self._run(control_handle, "answer")

    async def start_media_stream(
        self,
        control_handle: str,
        stream_url: str,
        stream_track: str = "both_tracks",
    ) -> bool:
        """Ask the provider to open the call's media socket against ``stream_url``."""
        logger.info(f"Starting media stream for {control_handle}: {stream_url}")
        return await self._run(
            control_handle,
            "streaming_start",
            {"stream_url": stream_url, "stream_track": stream_track},
        )

    async def speak(
        self,
        control_handle: str,
        payload: str,
        voice: str = "female",
        language: str = "en-US",
    ) -> bool:
        """Play a text-to-speech prompt to the caller."""
        return await self._run(
            control_handle,
            "speak",
            {"payload": payload, "voice": voice, "language": language},
        )

    async def hangup(self, control_handle: str) -> bool:
        """Hang up the call."""
        return await self._run(control_handle, "hangup")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
