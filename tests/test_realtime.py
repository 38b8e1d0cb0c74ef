"""Tests for the realtime speech-AI client."""

import json
from unittest.mock import AsyncMock

import pytest

from callbridge.ai.realtime import RealtimeClient, RealtimeState, build_session_update
from callbridge.config import AIConfig
from callbridge.session import CallSession

from fakes import FakeTransport, b64, wait_for


@pytest.fixture
def session():
    return CallSession(call_id="call-1")


@pytest.fixture
def transport():
    return FakeTransport()


def _client(session, transport, **config):
    callbacks = {
        "on_ready": AsyncMock(),
        "on_audio": AsyncMock(),
        "on_closed": AsyncMock(),
    }
    client = RealtimeClient(session, transport, AIConfig(**config), **callbacks)
    return client, callbacks


class TestSessionUpdate:

    def test_turn_detection_leaves_responses_to_client(self):
        msg = build_session_update(AIConfig())
        assert msg["type"] == "session.update"
        turn_detection = msg["session"]["turn_detection"]
        assert turn_detection["type"] == "server_vad"
        assert turn_detection["create_response"] is False

    def test_uses_configured_voice_and_formats(self):
        msg = build_session_update(AIConfig(voice="verse", instructions="Be brief."))
        assert msg["session"]["voice"] == "verse"
        assert msg["session"]["instructions"] == "Be brief."
        assert msg["session"]["input_audio_format"] == "pcm16"
        assert msg["session"]["output_audio_format"] == "pcm16"

    def test_connect_url_carries_model(self):
        config = AIConfig(model="gpt-4o-realtime-preview")
        assert config.connect_url == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview"


class TestRealtimeClient:

    @pytest.mark.asyncio
    async def test_open_sends_configuration(self, session, transport):
        client, _ = _client(session, transport)
        await client.open()
        assert transport.connected is True
        assert transport.sent_types() == ["session.update"]
        assert client.state is RealtimeState.CONFIGURING
        assert client.is_ready is False
        await client.close()

    @pytest.mark.asyncio
    async def test_session_updated_signals_ready_and_greets(self, session, transport):
        client, callbacks = _client(session, transport, greeting="Say hello.")
        await client.open()
        transport.feed({"type": "session.updated"})
        await wait_for(lambda: "response.create" in transport.sent_types())

        callbacks["on_ready"].assert_awaited_once_with(session)
        assert transport.sent_types() == ["session.update", "conversation.item.create", "response.create"]
        greeting = transport.sent_json()[1]["item"]
        assert greeting["role"] == "user"
        assert greeting["content"][0] == {"type": "input_text", "text": "Say hello."}
        assert client.state is RealtimeState.RESPONDING
        assert session.has_active_turn is True
        await client.close()

    @pytest.mark.asyncio
    async def test_repeated_session_updated_ignored(self, session, transport):
        client, callbacks = _client(session, transport, greeting="")
        await client.open()
        await client.handle_message(json.dumps({"type": "session.updated"}))
        await client.handle_message(json.dumps({"type": "session.updated"}))
        callbacks["on_ready"].assert_awaited_once()
        assert transport.sent_types() == ["session.update"]
        await client.close()

    @pytest.mark.asyncio
    async def test_one_response_per_turn(self, session, transport):
        client, _ = _client(session, transport, greeting="")
        await client.open()
        await client.handle_message(json.dumps({"type": "session.updated"}))

        user_item = json.dumps({"type": "conversation.item.created", "item": {"role": "user"}})
        await client.handle_message(user_item)
        await client.handle_message(user_item)
        assert transport.sent_types().count("response.create") == 1
        assert client.responses_requested == 1

        await client.handle_message(json.dumps({"type": "response.done"}))
        assert session.has_active_turn is False
        assert client.state is RealtimeState.IDLE

        await client.handle_message(user_item)
        assert transport.sent_types().count("response.create") == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_assistant_items_do_not_trigger_responses(self, session, transport):
        client, _ = _client(session, transport, greeting="")
        await client.open()
        await client.handle_message(json.dumps({"type": "session.updated"}))
        await client.handle_message(json.dumps({
            "type": "conversation.item.created", "item": {"role": "assistant"},
        }))
        assert "response.create" not in transport.sent_types()
        await client.close()

    @pytest.mark.asyncio
    async def test_audio_delta_decoded(self, session, transport):
        client, callbacks = _client(session, transport)
        await client.handle_message(json.dumps({
            "type": "response.audio.delta", "delta": b64(b"\x01\x00\x02\x00"),
        }))
        callbacks["on_audio"].assert_awaited_once_with(session, b"\x01\x00\x02\x00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "{not json",
        json.dumps(["list"]),
        json.dumps({"type": "response.audio.delta", "delta": "@@@"}),
        json.dumps({"type": "response.audio.delta"}),
        json.dumps({"type": "error", "error": {"message": "bad request"}}),
        json.dumps({"type": "rate_limits.updated"}),
    ])
    async def test_ignored_messages(self, session, transport, raw):
        client, callbacks = _client(session, transport)
        await client.handle_message(raw)
        callbacks["on_audio"].assert_not_awaited()
        callbacks["on_ready"].assert_not_awaited()
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_append_audio_only_when_ready(self, session, transport):
        client, _ = _client(session, transport, greeting="")
        await client.open()
        await client.append_audio(b"\x01\x00")
        assert transport.appended_audio() == []

        await client.handle_message(json.dumps({"type": "session.updated"}))
        await client.append_audio(b"\x01\x00")
        assert transport.appended_audio() == [b"\x01\x00"]
        await client.close()

    @pytest.mark.asyncio
    async def test_remote_close_notifies_once(self, session, transport):
        client, callbacks = _client(session, transport)
        await client.open()
        transport.remote_close()
        await wait_for(lambda: callbacks["on_closed"].await_count > 0)
        callbacks["on_closed"].assert_awaited_once_with(session)
        assert client.state is RealtimeState.CLOSED

    @pytest.mark.asyncio
    async def test_local_close_does_not_notify(self, session, transport):
        client, callbacks = _client(session, transport)
        await client.open()
        await client.close()
        await client.close()
        assert transport.closed is True
        callbacks["on_closed"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, session):
        client, _ = _client(session, FakeTransport(fail_connect=True))
        with pytest.raises(ConnectionError):
            await client.open()
