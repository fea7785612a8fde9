import asyncio
import json
import re
import unittest

import httpx
import numpy as np

from backend.audio import encode_audio_chunk
from backend.live_client import (
    LiveClientError,
    LiveSessionClient,
    PlaybackScheduler,
    new_session_id,
    parse_sse_line,
)


def _sse(*payloads):
    body = ":ok\n\n"
    for payload in payloads:
        body += f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
    return body


class _FakeRelay:
    """httpx.MockTransport handler that plays back canned SSE bodies."""

    def __init__(self, streams, init_status=200):
        self.streams = list(streams)
        self.init_status = init_status
        self.posts = []
        self.gets = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            self.posts.append(body)
            if body["action"] == "init" and self.init_status != 200:
                return httpx.Response(self.init_status, json={"error": "API key not configured"})
            if body["action"] == "init":
                return httpx.Response(200, json={"success": True, "sessionId": body["sessionId"]})
            return httpx.Response(200, json={"success": True})
        self.gets.append(request.url.params.get("sessionId"))
        body = self.streams.pop(0) if self.streams else _sse({"type": "error", "message": "closed"})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode("utf-8"))


class TestHelpers(unittest.TestCase):
    def test_session_id_shape(self):
        self.assertRegex(new_session_id(), re.compile(r"^session_\d+_[0-9a-z]{9}$"))
        self.assertTrue(new_session_id(now_ms=1700000000000).startswith("session_1700000000000_"))

    def test_parse_sse_line(self):
        self.assertEqual(parse_sse_line('data: {"type": "ping"}'), {"type": "ping"})
        self.assertIsNone(parse_sse_line(":ok"))
        self.assertIsNone(parse_sse_line(""))
        self.assertIsNone(parse_sse_line("event: message"))
        self.assertIsNone(parse_sse_line("data: [1]"))


class TestPlaybackScheduler(unittest.TestCase):
    def test_back_to_back_buffers_are_gapless(self):
        sched = PlaybackScheduler(sample_rate=24000)
        self.assertEqual(sched.schedule(np.ones(240)), 0.0)
        self.assertAlmostEqual(sched.schedule(np.full(240, 0.5)), 0.01)
        self.assertAlmostEqual(sched.next_start_time, 0.02)
        out = sched.render(480)
        self.assertTrue(np.all(out[:240] == 1.0))
        self.assertTrue(np.all(out[240:] == 0.5))

    def test_late_buffer_starts_now(self):
        sched = PlaybackScheduler(sample_rate=24000)
        sched.render(2400)
        self.assertAlmostEqual(sched.current_time, 0.1)
        self.assertAlmostEqual(sched.schedule(np.ones(10)), 0.1)

    def test_render_spans_block_boundaries(self):
        sched = PlaybackScheduler(sample_rate=1000)
        sched.schedule(np.ones(100))
        self.assertTrue(np.all(sched.render(50) == 1.0))
        second = sched.render(100)
        self.assertTrue(np.all(second[:50] == 1.0))
        self.assertTrue(np.all(second[50:] == 0.0))

    def test_reset_drops_pending_audio(self):
        sched = PlaybackScheduler(sample_rate=1000)
        sched.schedule(np.ones(100))
        sched.reset()
        self.assertTrue(np.all(sched.render(100) == 0.0))
        self.assertEqual(sched.next_start_time, sched.current_time)


class TestLiveSessionClient(unittest.IsolatedAsyncioTestCase):
    def _client(self, relay, **kwargs):
        self.transcripts = []
        self.cards = []
        self.errors = []
        self.lifecycle = []
        http = httpx.AsyncClient(transport=httpx.MockTransport(relay), base_url="http://relay.test")
        self.addAsyncCleanup(http.aclose)
        return LiveSessionClient(
            "http://relay.test",
            "第一行\n第二行",
            on_connect=lambda: self.lifecycle.append("connect"),
            on_disconnect=lambda: self.lifecycle.append("disconnect"),
            on_error=self.errors.append,
            on_transcription=lambda source, text: self.transcripts.append((source, text)),
            on_knowledge_card=self.cards.append,
            audio_output=False,
            reconnect_delay_s=0.0,
            http_client=http,
            **kwargs,
        )

    async def test_full_session_flow(self):
        card = {"type": "knowledgeCard", "title": "数学公式", "content": "E=mc²", "tags": ["数学"]}
        audio_chunk = encode_audio_chunk(np.zeros(480, dtype=np.float32))
        relay = _FakeRelay([
            _sse(
                {"type": "connected"},
                {"type": "transcription", "source": "output", "text": "你好"},
                {"type": "ping"},
                {"type": "knowledgeCard", "card": card},
                {"type": "audio", "data": audio_chunk, "mimeType": "audio/pcm;rate=24000"},
                {"type": "error", "message": "upstream gone"},
            )
        ])
        client = self._client(relay)

        await client.push_audio(np.zeros(4, dtype=np.float32))
        self.assertEqual(client.queued_audio, 1)

        session_id = await client.connect()
        await client._events_task

        self.assertEqual(relay.posts[0]["action"], "init")
        self.assertEqual(relay.posts[0]["script"], "第一行\n第二行")
        self.assertEqual(relay.posts[0]["sessionId"], session_id)
        self.assertEqual(relay.posts[1]["action"], "send")
        self.assertEqual(relay.posts[1]["audioData"], encode_audio_chunk(np.zeros(4)))
        self.assertEqual(client.queued_audio, 0)
        self.assertEqual(relay.gets, [session_id])

        self.assertEqual(self.lifecycle, ["connect"])
        self.assertEqual(self.transcripts, [("output", "你好")])
        self.assertEqual(self.cards, [card])
        self.assertEqual(self.errors, ["upstream gone"])
        self.assertAlmostEqual(client.playback.next_start_time, 480 / 24000)
        self.assertFalse(client.connected)

        await client.disconnect()
        self.assertEqual(relay.posts[-1], {"sessionId": session_id, "action": "disconnect"})
        self.assertEqual(self.lifecycle, ["connect", "disconnect"])

    async def test_stream_end_triggers_reconnect(self):
        relay = _FakeRelay([_sse({"type": "connected"}), _sse({"type": "connected"})])
        client = self._client(relay, max_reconnects=3)
        await client.connect()
        await client._events_task
        self.assertEqual(len(relay.gets), 3)
        self.assertEqual(self.lifecycle, ["connect", "connect"])
        self.assertEqual(self.errors, ["closed"])
        await client.disconnect()

    async def test_reconnect_gives_up(self):
        relay = _FakeRelay([_sse(), _sse(), _sse()])
        client = self._client(relay, max_reconnects=1)
        await client.connect()
        await client._events_task
        self.assertEqual(len(relay.gets), 2)
        self.assertIn("giving up", self.errors[-1])
        await client.disconnect()

    async def test_init_failure_reported(self):
        relay = _FakeRelay([], init_status=500)
        client = self._client(relay)
        with self.assertRaises(LiveClientError):
            await client.connect()
        self.assertEqual(self.errors, ["Failed to initialize session: API key not configured"])
        self.assertEqual(relay.gets, [])

    async def test_push_audio_when_connected_posts_immediately(self):
        relay = _FakeRelay([])
        client = self._client(relay)
        client.session_id = "session_1_abcdefghi"
        await client.handle_event({"type": "connected"})
        await client.push_audio(np.ones(2, dtype=np.float32))
        self.assertEqual(relay.posts[-1]["action"], "send")
        self.assertEqual(relay.posts[-1]["audioData"], encode_audio_chunk(np.ones(2)))
        self.assertEqual(client.queued_audio, 0)

    async def test_queued_audio_is_sent_before_live_audio(self):
        sent = []

        async def slow_relay(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["action"] == "send":
                await asyncio.sleep(0.02)
                sent.append(body["audioData"])
            return httpx.Response(200, json={"success": True})

        client = self._client(slow_relay)
        client.session_id = "session_1_abcdefghi"
        queued = [np.full(2, v, dtype=np.float32) for v in (0.1, 0.2, 0.3)]
        for block in queued:
            await client.push_audio(block)

        connecting = asyncio.create_task(client.handle_event({"type": "connected"}))
        await asyncio.sleep(0.005)
        client.queue_samples(np.full(2, 0.5, dtype=np.float32))
        await client.push_audio(np.full(2, 0.6, dtype=np.float32))
        await asyncio.wait_for(connecting, timeout=2.0)
        if client._sender_task is not None:
            await asyncio.wait_for(client._sender_task, timeout=2.0)

        expected = [encode_audio_chunk(b) for b in queued] + [
            encode_audio_chunk(np.full(2, 0.5, dtype=np.float32)),
            encode_audio_chunk(np.full(2, 0.6, dtype=np.float32)),
        ]
        self.assertEqual(sent, expected)
        self.assertEqual(client.queued_audio, 0)

    async def test_disconnect_cancels_sender(self):
        gate = asyncio.Event()

        async def stalled_relay(request: httpx.Request) -> httpx.Response:
            if json.loads(request.content)["action"] == "send":
                await gate.wait()
            return httpx.Response(200, json={"success": True})

        client = self._client(stalled_relay)
        client.session_id = "session_1_abcdefghi"
        client.connected = True
        client.queue_samples(np.zeros(2, dtype=np.float32))
        sender = client._sender_task
        self.assertIsNotNone(sender)
        await asyncio.sleep(0.01)
        await client.disconnect()
        self.assertTrue(sender.cancelled())
        self.assertIsNone(client._sender_task)


if __name__ == "__main__":
    unittest.main()
