import json
import os
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

import main
from backend.card_fallback import FallbackCardGenerator


class _FakeConnector:
    def __init__(self):
        self.calls = 0

    async def connect(self, session, *, on_close=None):
        self.calls += 1
        raise AssertionError("routes under test never open the upstream")


def _sse_events(body: str) -> list:
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


class TestLiveSessionRoutes(unittest.TestCase):
    def setUp(self):
        self.connector = _FakeConnector()
        self.app = main.create_app(
            {"api_key": "test-key", "live_models": ["models/a", "models/b"]},
            connector=self.connector,
            card_generator=FallbackCardGenerator(None),
        )
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def _post(self, body):
        return self.client.post("/api/live-session", json=body)

    def test_init_requires_script(self):
        resp = self._post({"sessionId": "s1", "action": "init"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("error", resp.json())

    def test_init_creates_session(self):
        resp = self._post({"sessionId": "s1", "action": "init", "script": "第一行\n第二行", "knowledgeCards": [{"title": "x"}]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "sessionId": "s1"})
        session = self.app.state.store.get("s1")
        self.assertEqual(session.script, "第一行\n第二行")
        self.assertEqual(session.knowledge_cards, [{"title": "x"}])

    def test_send_to_unknown_session_is_404(self):
        resp = self._post({"sessionId": "nope", "action": "send", "audioData": "AAA="})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"error": "Session not found"})

    def test_send_before_subscription_is_queued(self):
        self._post({"sessionId": "s1", "action": "init", "script": "s"})
        resp = self._post({"sessionId": "s1", "action": "send", "audioData": "AAA="})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "queued": True})
        self.assertEqual([c.data for c in self.app.state.store.get("s1").audio_queue], ["AAA="])

    def test_send_without_audio_is_400(self):
        self._post({"sessionId": "s1", "action": "init", "script": "s"})
        resp = self._post({"sessionId": "s1", "action": "send"})
        self.assertEqual(resp.status_code, 400)

    def test_disconnect_removes_session(self):
        self._post({"sessionId": "s1", "action": "init", "script": "s"})
        resp = self._post({"sessionId": "s1", "action": "disconnect"})
        self.assertEqual(resp.json(), {"success": True})
        self.assertNotIn("s1", self.app.state.store)
        self.assertEqual(self._post({"sessionId": "s1", "action": "disconnect"}).status_code, 200)

    def test_bad_requests(self):
        self.assertEqual(self._post({"sessionId": "s1", "action": "explode"}).status_code, 400)
        self.assertEqual(self._post({"action": "init", "script": "s"}).status_code, 400)
        self.assertEqual(self._post(["not", "an", "object"]).status_code, 400)
        resp = self.client.post(
            "/api/live-session",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_ghost_subscription_gets_error_then_ends(self):
        resp = self.client.get("/api/live-session", params={"sessionId": "ghost"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers["content-type"].startswith("text/event-stream"))
        self.assertEqual(resp.headers["cache-control"], "no-cache")
        self.assertEqual(resp.headers["x-accel-buffering"], "no")
        self.assertTrue(resp.text.startswith(":ok\n\n"))
        events = _sse_events(resp.text)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["type"], "error")
        self.assertIn("Session not found", events[0]["message"])
        self.assertEqual(self.connector.calls, 0)

    def test_subscription_requires_session_id(self):
        self.assertEqual(self.client.get("/api/live-session").status_code, 400)

    def test_health(self):
        self._post({"sessionId": "s1", "action": "init", "script": "s"})
        body = self.client.get("/api/health").json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["configured"])
        self.assertEqual(body["models"], ["models/a", "models/b"])
        self.assertEqual(body["sessions"], 1)


class TestMissingApiKey(unittest.TestCase):
    def test_every_verb_fails_with_500(self):
        with patch.dict(os.environ):
            for name in ("GEMINI_API_KEY", "VUE_APP_GEMINI_API_KEY"):
                os.environ.pop(name, None)
            app = main.create_app({"api_key": ""})
            with TestClient(app) as client:
                post = client.post("/api/live-session", json={"sessionId": "s1", "action": "init", "script": "s"})
                self.assertEqual(post.status_code, 500)
                self.assertEqual(post.json(), {"error": "API key not configured"})
                get = client.get("/api/live-session", params={"sessionId": "s1"})
                self.assertEqual(get.status_code, 500)
                self.assertFalse(client.get("/api/health").json()["configured"])

    def test_key_read_from_environment(self):
        with patch.dict(os.environ, {"GEMINI_API_KEY": "", "VUE_APP_GEMINI_API_KEY": "legacy-key"}):
            app = main.create_app({}, connector=_FakeConnector(), card_generator=FallbackCardGenerator(None))
            with TestClient(app) as client:
                self.assertTrue(client.get("/api/health").json()["configured"])


if __name__ == "__main__":
    unittest.main()
