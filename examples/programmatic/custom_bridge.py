"""Example: Programmatic bridge with custom event handlers.

This example shows how to use callbridge's decorator API to add custom
logic around calls - useful for logging, analytics or call records.

Usage:
    export OPENAI_API_KEY=sk-...
    export TELNYX_API_KEY=KEY...
    export PUBLIC_URL=bridge.example.com
    python custom_bridge.py

Point the Telnyx Call Control application's webhook URL at
https://<PUBLIC_URL>/webhook.
"""

import uvicorn

from callbridge import BridgeConfig, CallBridge, CallEvent, CallSession, create_app

# Create the bridge with programmatic config; credentials come from the environment
bridge = CallBridge(BridgeConfig.from_dict({
    "provider": "telnyx",
    "port": 3000,
    "voice": "alloy",
    "ai": {
        "instructions": "You are the front desk of a dental office. Keep answers short.",
        "greeting": "Greet the caller and ask how you can help.",
    },
    "telephony": {
        "failure_message": "Sorry, our assistant is unavailable. Please call back later.",
        "hangup_on_ai_failure": True,
    },
}))


@bridge.on_event
async def log_event(event: CallEvent):
    """Called for every telephony webhook event."""
    print(f"[{event.provider}] {event.event_type.value} call={event.call_id}")


@bridge.on_call_start
async def handle_call_start(session: CallSession):
    """Called once the call is answered and its AI session is opening."""
    print("=== New call ===")
    print(f"  Call: {session.call_id}")
    print(f"  From: {session.from_number}")
    print(f"  To: {session.to_number}")


@bridge.on_call_end
async def handle_call_end(session: CallSession, reason: str):
    """Called once per call after both legs are closed."""
    print(f"=== Call ended ({reason}) ===")
    print(f"  Duration: {session.duration_ms}ms")
    print(f"  Audio in/out: {session.audio_bytes_in}/{session.audio_bytes_out} bytes")
    print(f"  Dropped frames in/out: {session.dropped_inbound_frames}/{session.dropped_outbound_frames}")


if __name__ == "__main__":
    uvicorn.run(create_app(bridge=bridge), host="0.0.0.0", port=bridge.config.server.port)
