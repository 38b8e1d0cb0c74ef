"""callbridge - Bridge telephony calls to realtime speech-AI sessions.

Answers inbound phone calls, opens one realtime AI session per call, and
relays caller and AI audio between the two legs, resampling between the
telephony rate (8 kHz) and the AI rate (24 kHz).

Quick start (config-driven):
    $ pip install callbridge
    $ callbridge init          # generates bridge.yaml
    $ callbridge run --config bridge.yaml

Quick start (programmatic):
    from callbridge import CallBridge, create_app

    bridge = CallBridge({"provider": "telnyx", "public_url": "bridge.example.com"})

    @bridge.on_call_end
    async def log_call(session, reason):
        print(f"Call {session.call_id} ended: {reason}")

    app = create_app(bridge=bridge)
"""

__version__ = "0.1.0"

# Core
from callbridge.bridge import CallBridge
from callbridge.config import BridgeConfig, load_config
from callbridge.session import CallPhase, CallSession, SessionRegistry

# Events
from callbridge.core.events import AudioFrame, CallEvent, CallEventType, MediaFraming

# Audio
from callbridge.audio.resampler import Resampler, downsample, upsample

# Legs
from callbridge.ai.realtime import RealtimeClient, RealtimeState
from callbridge.telephony.control import CallControlClient, CallControlError
from callbridge.telephony.relay import MediaRelay

# Serializers
from callbridge.serializers.base import BaseSerializer
from callbridge.serializers.registry import serializer_registry

# Transports
from callbridge.transports.base import BaseTransport, TransportClosed
from callbridge.transports.websocket import FastAPIWebSocketTransport, WebSocketClientTransport

# Server
from callbridge.server import create_app, run_server

__all__ = [
    # Core
    "CallBridge",
    "BridgeConfig",
    "load_config",
    "CallPhase",
    "CallSession",
    "SessionRegistry",
    # Events
    "AudioFrame",
    "CallEvent",
    "CallEventType",
    "MediaFraming",
    # Audio
    "Resampler",
    "downsample",
    "upsample",
    # Legs
    "RealtimeClient",
    "RealtimeState",
    "CallControlClient",
    "CallControlError",
    "MediaRelay",
    # Serializers
    "BaseSerializer",
    "serializer_registry",
    # Transports
    "BaseTransport",
    "TransportClosed",
    "WebSocketClientTransport",
    "FastAPIWebSocketTransport",
    # Server
    "create_app",
    "run_server",
]
