"""Tests for the CallBridge controller.

The telephony call-control client is mocked and both sockets (AI provider
and telephony media) are in-memory fakes, so these tests drive whole calls
through the bridge: webhooks in, stream starts out, audio both ways.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from callbridge.bridge import CallBridge
from callbridge.config import BridgeConfig
from callbridge.session import CallPhase
from callbridge.telephony.control import CallControlClient

from fakes import FakeTransport, b64, pcm16, telnyx_webhook, wait_for

CALL_ID = "v3:call-1"
STREAM_URL = "wss://bridge.example.com/media-stream-ws?call_id=v3%3Acall-1"


@pytest.fixture
def control():
    return AsyncMock(spec=CallControlClient)


@pytest.fixture
def ai_transports():
    return []


@pytest.fixture
def make_bridge(control, ai_transports):
    def _make(fail_connect=False, connect_delay=0.0, **overrides):
        data = {
            "public_url": "https://bridge.example.com",
            "telnyx_api_key": "KEY_TEST",
            "openai_api_key": "sk-test",
            "ai": {"ready_timeout_seconds": 0.2, "greeting": "Greet the caller."},
            "media": {"close_grace_seconds": 0.1},
        }
        for section, values in overrides.items():
            if isinstance(values, dict):
                data.setdefault(section, {}).update(values)
            else:
                data[section] = values

        def ai_factory():
            transport = FakeTransport(fail_connect=fail_connect, connect_delay=connect_delay)
            ai_transports.append(transport)
            return transport

        return CallBridge(BridgeConfig.from_dict(data), control=control, ai_transport_factory=ai_factory)

    return _make


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()


def _stream_starts(control):
    return [c.args for c in control.start_media_stream.await_args_list]


async def _ready_call(bridge, ai_transports):
    """Initiate a call and let the AI session become ready."""
    await bridge.handle_webhook(telnyx_webhook("call.initiated"))
    session = bridge.sessions.get(CALL_ID)
    ai_transports[0].feed({"type": "session.updated"})
    await wait_for(lambda: session.ai_ready)
    return session


async def _attach_media(bridge, call_id=CALL_ID):
    media = FakeTransport()
    task = asyncio.create_task(bridge.handle_media_connection(media, call_id))
    return media, task


class TestCallInitiated:

    @pytest.mark.asyncio
    async def test_creates_session_answers_and_opens_ai(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))

        session = bridge.sessions.get(CALL_ID)
        assert session is not None
        assert session.phase is CallPhase.ANSWERING
        assert session.from_number == "+15550001111"
        control.answer.assert_awaited_once_with(CALL_ID)
        assert len(ai_transports) == 1
        assert ai_transports[0].sent_types() == ["session.update"]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_initiated_ignored(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        assert len(ai_transports) == 1
        control.answer.assert_awaited_once()
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_ai_connect_failure_tears_down(self, make_bridge, control):
        bridge = make_bridge(
            fail_connect=True,
            telephony={"failure_message": "Sorry, please call back later.", "hangup_on_ai_failure": True},
        )
        ended = []

        @bridge.on_call_end
        async def record(session, reason):
            ended.append(reason)

        await bridge.handle_webhook(telnyx_webhook("call.initiated"))

        assert CALL_ID not in bridge.sessions
        control.speak.assert_awaited_once_with(CALL_ID, "Sorry, please call back later.")
        control.hangup.assert_awaited_once_with(CALL_ID)
        assert ended == ["ai_connect_failed"]

    @pytest.mark.asyncio
    async def test_hangup_while_ai_connect_fails_is_silent(self, make_bridge, control, ai_transports):
        bridge = make_bridge(
            fail_connect=True,
            connect_delay=0.05,
            telephony={"failure_message": "Sorry, please call back later.", "hangup_on_ai_failure": True},
        )
        ended = []

        @bridge.on_call_end
        async def record(session, reason):
            ended.append(reason)

        initiated = asyncio.create_task(bridge.handle_webhook(telnyx_webhook("call.initiated")))
        await wait_for(lambda: ai_transports)
        await bridge.handle_webhook(telnyx_webhook("call.hangup"))
        await asyncio.wait_for(initiated, 1.0)

        assert CALL_ID not in bridge.sessions
        control.speak.assert_not_awaited()
        control.hangup.assert_not_awaited()
        assert ended == ["call.hangup"]

    @pytest.mark.asyncio
    async def test_unparseable_webhook_ignored(self, bridge, control):
        assert await bridge.handle_webhook({"data": {"event_type": "call.machine.detection.ended"}}) is None
        assert await bridge.handle_webhook({}) is None
        control.answer.assert_not_awaited()


class TestStreamStartRace:

    @pytest.mark.asyncio
    async def test_answered_before_ai_ready(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        await bridge.handle_webhook(telnyx_webhook("call.answered"))

        session = bridge.sessions.get(CALL_ID)
        assert session.phase is CallPhase.STREAM_PENDING
        assert session.pending_stream_start is True
        control.start_media_stream.assert_not_awaited()

        ai_transports[0].feed({"type": "session.updated"})
        await wait_for(lambda: control.start_media_stream.await_count == 1)
        assert session.phase is CallPhase.STREAMING
        assert session.pending_stream_start is False
        assert _stream_starts(control) == [(CALL_ID, STREAM_URL)]

        # The readiness timeout must not start a second stream
        await asyncio.sleep(0.3)
        control.start_media_stream.assert_awaited_once()
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_ai_ready_before_answered(self, bridge, control, ai_transports):
        session = await _ready_call(bridge, ai_transports)
        control.start_media_stream.assert_not_awaited()

        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        assert session.phase is CallPhase.STREAMING
        assert _stream_starts(control) == [(CALL_ID, STREAM_URL)]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_greeting_requested_once_ready(self, bridge, ai_transports):
        await _ready_call(bridge, ai_transports)
        await wait_for(lambda: "response.create" in ai_transports[0].sent_types())
        assert ai_transports[0].sent_types() == [
            "session.update", "conversation.item.create", "response.create",
        ]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_repeated_answered_ignored(self, bridge, control, ai_transports):
        await _ready_call(bridge, ai_transports)
        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        control.start_media_stream.assert_awaited_once()
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_ready_timeout_starts_stream_anyway(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        session = bridge.sessions.get(CALL_ID)

        await wait_for(lambda: control.start_media_stream.await_count == 1)
        assert session.phase is CallPhase.STREAMING
        assert session.ai_ready is False

        # A late readiness signal does not start the stream again
        ai_transports[0].feed({"type": "session.updated"})
        await wait_for(lambda: session.ai_ready)
        control.start_media_stream.assert_awaited_once()
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_answered_for_unknown_call(self, bridge, control):
        await bridge.handle_webhook(telnyx_webhook("call.answered", call_control_id="v3:other"))
        control.start_media_stream.assert_not_awaited()


class TestAudioRelay:

    @pytest.mark.asyncio
    async def test_audio_flows_both_ways(self, bridge, ai_transports):
        session = await _ready_call(bridge, ai_transports)
        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        ai = ai_transports[0]

        media, task = await _attach_media(bridge)
        await wait_for(lambda: session.media is not None)

        # 20ms of caller audio at 8kHz becomes 20ms at 24kHz
        media.feed(pcm16(*range(80)))
        await wait_for(lambda: ai.appended_audio())
        assert len(ai.appended_audio()[0]) == 480

        # 480 bytes of AI audio at 24kHz become 160 bytes at 8kHz
        ai.feed({"type": "response.audio.delta", "delta": b64(pcm16(*range(240)))})
        await wait_for(lambda: media.sent)
        assert media.sent == [pcm16(*range(0, 240, 3))]
        assert session.audio_bytes_in == 160
        assert session.audio_bytes_out == 160

        assert await bridge.hangup(CALL_ID) is True
        await asyncio.wait_for(task, 1.0)
        assert media.closed is True

    @pytest.mark.asyncio
    async def test_ai_audio_buffered_until_media_attaches(self, bridge, ai_transports):
        session = await _ready_call(bridge, ai_transports)
        ai = ai_transports[0]
        first, second = pcm16(1, 2, 3, 4, 5, 6), pcm16(7, 8, 9, 10, 11, 12)
        ai.feed({"type": "response.audio.delta", "delta": b64(first)})
        ai.feed({"type": "response.audio.delta", "delta": b64(second)})
        await wait_for(lambda: session.queued_outbound_frames == 2)

        media, task = await _attach_media(bridge)
        await wait_for(lambda: len(media.sent) == 2)
        assert media.sent == [pcm16(1, 4), pcm16(7, 10)]
        assert session.queued_outbound_frames == 0

        await bridge.hangup(CALL_ID)
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_caller_audio_before_ai_ready_dropped(self, bridge, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        session = bridge.sessions.get(CALL_ID)

        media, task = await _attach_media(bridge)
        await wait_for(lambda: session.media is not None)
        media.feed(pcm16(1, 2, 3))
        await wait_for(lambda: session.dropped_inbound_frames == 1)
        assert ai_transports[0].appended_audio() == []

        await bridge.hangup(CALL_ID)
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_json_framing_for_voximplant(self, make_bridge, control, ai_transports):
        bridge = make_bridge(provider="voximplant")
        await bridge.handle_webhook({"event": "CallStarted", "callId": "vox-1", "callerId": "+1555"})
        session = bridge.sessions.get("vox-1")
        assert session.provider == "voximplant"
        ai_transports[0].feed({"type": "session.updated"})
        await wait_for(lambda: session.ai_ready)

        media, task = await _attach_media(bridge, "vox-1")
        await wait_for(lambda: session.media is not None)
        ai_transports[0].feed({"type": "response.audio.delta", "delta": b64(pcm16(9, 0, 0))})
        await wait_for(lambda: media.sent)
        assert json.loads(media.sent[0]) == {"event": "media", "media": {"payload": b64(pcm16(9))}}

        await bridge.handle_webhook({"event": "CallDisconnected", "callId": "vox-1"})
        assert "vox-1" not in bridge.sessions
        await asyncio.wait_for(task, 1.0)


class TestMediaBinding:

    @pytest.mark.asyncio
    async def test_unknown_call_id_rejected(self, bridge):
        media = FakeTransport()
        await bridge.handle_media_connection(media, "v3:unknown")
        assert media.closed is True

    @pytest.mark.asyncio
    async def test_unbound_socket_claims_first_session(self, make_bridge, ai_transports):
        bridge = make_bridge(media={"allow_unbound_fallback": True})
        session = await _ready_call(bridge, ai_transports)
        media, task = await _attach_media(bridge, None)
        await wait_for(lambda: session.media is not None)
        await bridge.hangup(CALL_ID)
        await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_unbound_socket_rejected_by_default(self, bridge, ai_transports):
        session = await _ready_call(bridge, ai_transports)
        media = FakeTransport()
        await bridge.handle_media_connection(media, None)
        assert media.closed is True
        assert session.media is None
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_media_close_without_hangup_ends_call(self, bridge, ai_transports):
        ended = []

        @bridge.on_call_end
        async def record(session, reason):
            ended.append(reason)

        session = await _ready_call(bridge, ai_transports)
        media, task = await _attach_media(bridge)
        await wait_for(lambda: session.media is not None)

        media.remote_close()
        await asyncio.wait_for(task, 1.0)
        await wait_for(lambda: CALL_ID not in bridge.sessions)
        assert session.is_active is False
        assert ai_transports[0].closed is True
        assert ended == ["media_closed"]

    @pytest.mark.asyncio
    async def test_media_reconnect_within_grace_keeps_call(self, bridge, ai_transports):
        session = await _ready_call(bridge, ai_transports)
        media, task = await _attach_media(bridge)
        await wait_for(lambda: session.media is not None)
        media.remote_close()
        await asyncio.wait_for(task, 1.0)

        media2, task2 = await _attach_media(bridge)
        await wait_for(lambda: session.media is not None)
        await asyncio.sleep(0.3)
        assert bridge.sessions.get(CALL_ID) is session

        await bridge.hangup(CALL_ID)
        await asyncio.wait_for(task2, 1.0)


class TestTeardown:

    @pytest.mark.asyncio
    async def test_hangup_is_idempotent(self, bridge, ai_transports):
        ended = []

        @bridge.on_call_end
        async def record(session, reason):
            ended.append(reason)

        session = await _ready_call(bridge, ai_transports)
        await bridge.handle_webhook(telnyx_webhook("call.hangup"))
        await bridge.handle_webhook(telnyx_webhook("call.hangup"))

        assert CALL_ID not in bridge.sessions
        assert session.phase is CallPhase.CLOSED
        assert ai_transports[0].closed is True
        assert ended == ["call.hangup"]
        assert await bridge.hangup(CALL_ID) is False

    @pytest.mark.asyncio
    async def test_bridged_is_terminal(self, bridge, ai_transports):
        await _ready_call(bridge, ai_transports)
        await bridge.handle_webhook(telnyx_webhook("call.bridged"))
        assert CALL_ID not in bridge.sessions

    @pytest.mark.asyncio
    async def test_hangup_cancels_pending_timeout(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        await bridge.handle_webhook(telnyx_webhook("call.answered"))
        await bridge.handle_webhook(telnyx_webhook("call.hangup"))
        await asyncio.sleep(0.3)
        control.start_media_stream.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_drop_ends_call(self, make_bridge, control, ai_transports):
        bridge = make_bridge(telephony={"failure_message": "Goodbye."})
        await _ready_call(bridge, ai_transports)
        ai_transports[0].remote_close()

        await wait_for(lambda: CALL_ID not in bridge.sessions)
        control.speak.assert_awaited_once_with(CALL_ID, "Goodbye.")
        control.hangup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shutdown_ends_all_calls(self, bridge, control, ai_transports):
        await bridge.handle_webhook(telnyx_webhook("call.initiated", call_control_id="v3:a"))
        await bridge.handle_webhook(telnyx_webhook("call.initiated", call_control_id="v3:b"))
        assert bridge.sessions.active_count == 2

        await bridge.shutdown()
        assert len(bridge.sessions) == 0
        assert all(t.closed for t in ai_transports)
        control.close.assert_awaited_once()


class TestEventHandlers:

    @pytest.mark.asyncio
    async def test_handlers_receive_events(self, bridge):
        events, started = [], []

        @bridge.on_event
        async def on_event(event):
            events.append(event.event_type.value)

        @bridge.on_call_start
        async def on_start(session):
            started.append(session.call_id)

        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        await bridge.handle_webhook(telnyx_webhook("call.hangup"))
        assert events == ["call.initiated", "call.hangup"]
        assert started == [CALL_ID]

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_break_calls(self, bridge):

        @bridge.on_event
        async def broken(event):
            raise RuntimeError("boom")

        await bridge.handle_webhook(telnyx_webhook("call.initiated"))
        assert CALL_ID in bridge.sessions
        await bridge.shutdown()
