"""Realtime speech-AI leg."""

from callbridge.ai.realtime import RealtimeClient, RealtimeState, build_session_update

__all__ = ["RealtimeClient", "RealtimeState", "build_session_update"]
