import asyncio
import unittest

from backend.knowledge_cards import KnowledgeCard
from backend.session_store import PendingCardQueue, SessionStore


class _FakeLink:
    def __init__(self):
        self.terminated = False

    def terminate(self):
        self.terminated = True


class _FakeChannel:
    def __init__(self):
        self.ended = False

    def end(self):
        self.ended = True


def _card(title):
    return KnowledgeCard(title=title, content=f"{title} content", tags=[])


class TestSessionTranscript(unittest.TestCase):
    def test_transcript_never_exceeds_limit(self):
        store = SessionStore()
        session = store.init("s1", "script")
        for i in range(57):
            session.add_transcript("input" if i % 2 else "output", f"line {i}")
            self.assertLessEqual(len(session.transcript), 20)
        self.assertEqual(session.transcript[0].text, "line 37")
        self.assertEqual(session.transcript[-1].text, "line 56")

    def test_blank_text_ignored_and_latest_by_source(self):
        session = SessionStore().init("s1", "script")
        self.assertIsNone(session.add_transcript("output", "   "))
        session.add_transcript("output", " first ")
        session.add_transcript("input", "question")
        session.add_transcript("output", "second")
        self.assertEqual(session.latest_transcript("output"), "second")
        self.assertEqual(session.latest_transcript("input"), "question")
        self.assertEqual([e.text for e in session.recent_transcript(2)], ["question", "second"])
        self.assertEqual(session.recent_transcript(0), [])

    def test_configurable_limit(self):
        session = SessionStore(transcript_limit=3).init("s1", "script")
        for i in range(5):
            session.add_transcript("output", str(i))
        self.assertEqual([e.text for e in session.transcript], ["2", "3", "4"])


class TestSessionLifecycle(unittest.TestCase):
    def test_init_overwrites_and_closes_previous(self):
        store = SessionStore()
        first = store.init("s1", "a")
        link = _FakeLink()
        first.upstream = link
        second = store.init("s1", "b", [{"title": "x"}])
        self.assertTrue(link.terminated)
        self.assertIs(store.get("s1"), second)
        self.assertEqual(second.script, "b")
        self.assertEqual(second.knowledge_cards, [{"title": "x"}])

    def test_disconnect_tears_down_without_drain(self):
        store = SessionStore()
        session = store.init("s1", "script")
        link, channel = _FakeLink(), _FakeChannel()
        session.upstream = link
        session.channel = channel
        session.queue_audio("AAA=")
        self.assertTrue(store.disconnect("s1"))
        self.assertTrue(link.terminated)
        self.assertTrue(channel.ended)
        self.assertEqual(len(session.audio_queue), 0)
        self.assertNotIn("s1", store)
        self.assertFalse(store.disconnect("s1"))

    def test_audio_queue_is_fifo(self):
        session = SessionStore().init("s1", "script")
        for data in ("a", "b", "c"):
            session.queue_audio(data)
        self.assertEqual([c.data for c in session.drain_audio()], ["a", "b", "c"])
        self.assertEqual(session.drain_audio(), [])

    def test_requeued_audio_goes_back_in_front(self):
        session = SessionStore().init("s1", "script")
        for data in ("a", "b", "c"):
            session.queue_audio(data, now=1.0)
        chunks = session.drain_audio()
        session.queue_audio("d", now=2.0)
        session.requeue_audio(chunks[1:])
        self.assertEqual([c.data for c in session.audio_queue], ["b", "c", "d"])
        self.assertEqual(session.oldest_activity_ts(), 1.0)

    def test_seen_call_ids(self):
        session = SessionStore().init("s1", "script")
        self.assertTrue(session.remember_call_id("c1"))
        self.assertFalse(session.remember_call_id("c1"))
        self.assertTrue(session.remember_call_id(None))
        self.assertTrue(session.remember_call_id(None))


class TestSweep(unittest.TestCase):
    def test_inactive_session_with_stale_audio_is_evicted(self):
        store = SessionStore(inactive_timeout_s=300)
        session = store.init("old", "script")
        session.queue_audio("AAA=", now=1000.0)
        session.last_seen_at = 1000.0
        self.assertEqual(store.sweep(now=1000.0 + 301), ["old"])
        self.assertNotIn("old", store)

    def test_active_session_is_kept(self):
        store = SessionStore(inactive_timeout_s=300)
        session = store.init("live", "script")
        session.is_active = True
        session.queue_audio("AAA=", now=0.0)
        self.assertEqual(store.sweep(now=10_000.0), [])

    def test_empty_queue_uses_last_seen(self):
        store = SessionStore(inactive_timeout_s=300)
        session = store.init("idle", "script")
        session.last_seen_at = 5000.0
        self.assertEqual(store.sweep(now=5000.0 + 100), [])
        self.assertEqual(store.sweep(now=5000.0 + 400), ["idle"])

    def test_oldest_chunk_decides(self):
        store = SessionStore(inactive_timeout_s=300)
        session = store.init("s", "script")
        session.last_seen_at = 2000.0
        session.queue_audio("a", now=1000.0)
        session.queue_audio("b", now=1990.0)
        self.assertEqual(store.sweep(now=1400.0), ["s"])


class TestSweeperTask(unittest.IsolatedAsyncioTestCase):
    async def test_background_sweep_and_stop(self):
        store = SessionStore(sweep_interval_s=0.01, inactive_timeout_s=0.0)
        session = store.init("s", "script")
        session.last_seen_at = 0.0
        store.start()
        for _ in range(50):
            if "s" not in store:
                break
            await asyncio.sleep(0.01)
        self.assertNotIn("s", store)
        store.init("t", "script")
        await store.stop()
        self.assertEqual(len(store), 0)


class TestPendingCardQueue(unittest.TestCase):
    def test_flush_stops_at_first_failure_and_keeps_order(self):
        queue = PendingCardQueue()
        for title in ("a", "b", "c", "d"):
            queue.append(_card(title))
        sent = []

        def sink(card):
            if card.title == "c":
                return False
            sent.append(card.title)
            return True

        self.assertEqual(queue.flush(sink), 2)
        self.assertEqual(sent, ["a", "b"])
        self.assertEqual([c.title for c in queue], ["c", "d"])

        self.assertEqual(queue.flush(lambda card: sent.append(card.title) or True), 0)
        self.assertEqual(sent, ["a", "b", "c", "d"])

    def test_sink_exception_counts_as_failure(self):
        queue = PendingCardQueue()
        queue.append(_card("a"))

        def sink(card):
            raise RuntimeError("boom")

        with self.assertLogs("backend.session_store", level="ERROR"):
            self.assertEqual(queue.flush(sink), 1)

    def test_overflow_drops_oldest(self):
        queue = PendingCardQueue(maxlen=2)
        with self.assertLogs("backend.session_store", level="WARNING"):
            for title in ("a", "b", "c"):
                queue.append(_card(title))
        self.assertEqual([c.title for c in queue], ["b", "c"])


if __name__ == "__main__":
    unittest.main()
