import asyncio
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from backend.interpreter import DelimitedCardBuffer
from backend.knowledge_cards import KnowledgeCard
from backend.log_events import log_important

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 20
SEEN_CALL_IDS_LIMIT = 64


@dataclass
class TranscriptEntry:
    source: str  # "input" (user speech) or "output" (model speech)
    text: str
    timestamp: float


@dataclass
class QueuedAudioChunk:
    data: str
    timestamp: float


class FallbackToken:
    """Handle for one scheduled print-intent fallback. Rescheduling cancels the previous token."""

    def __init__(self, scheduled_at: float, trigger_text: str):
        self.scheduled_at = scheduled_at
        self.trigger_text = trigger_text
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class PendingCardQueue:
    """
    Knowledge cards produced while the SSE stream could not take them.

    `flush(sink)` sends in order and stops at the first failed write; the failed
    card and everything after it stay queued, in order, for the next attempt.
    """

    def __init__(self, maxlen: int = 50):
        self.maxlen = max(1, int(maxlen))
        self._items: deque[KnowledgeCard] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def append(self, card: KnowledgeCard) -> None:
        if len(self._items) >= self.maxlen:
            dropped = self._items.popleft()
            logger.warning(f"Pending knowledge card queue full; dropping oldest card '{dropped.title}'")
        self._items.append(card)

    def flush(self, sink: Callable[[KnowledgeCard], bool]) -> int:
        while self._items:
            card = self._items[0]
            try:
                ok = bool(sink(card))
            except Exception:
                logger.exception("Pending knowledge card sink raised")
                ok = False
            if not ok:
                break
            self._items.popleft()
        return len(self._items)

    def clear(self) -> None:
        self._items.clear()


@dataclass
class Session:
    session_id: str
    script: str
    knowledge_cards: list = field(default_factory=list)
    upstream: Any = None
    connecting: Optional[asyncio.Task] = None
    channel: Any = None
    audio_queue: deque = field(default_factory=deque)
    is_active: bool = False
    transcript: deque = field(default_factory=lambda: deque(maxlen=TRANSCRIPT_LIMIT))
    fallback_token: Optional[FallbackToken] = None
    fallback_task: Optional[asyncio.Task] = None
    last_function_call_at: Optional[float] = None
    last_print_intent_at: Optional[float] = None
    last_fallback_at: Optional[float] = None
    pending_cards: PendingCardQueue = field(default_factory=PendingCardQueue)
    has_sent_initial_prompt: bool = False
    text_buffer: DelimitedCardBuffer = field(default_factory=DelimitedCardBuffer)
    seen_call_ids: deque = field(default_factory=lambda: deque(maxlen=SEEN_CALL_IDS_LIMIT))
    created_at: float = field(default_factory=time.time)
    last_seen_at: float = field(default_factory=time.time)

    # ---- transcript ----

    def add_transcript(self, source: str, text: str) -> Optional[TranscriptEntry]:
        normalized = (text or "").strip()
        if not normalized:
            return None
        entry = TranscriptEntry(source=source, text=normalized, timestamp=time.time())
        self.transcript.append(entry)
        return entry

    def latest_transcript(self, source: str) -> Optional[str]:
        for entry in reversed(self.transcript):
            if entry.source == source:
                return entry.text
        return None

    def recent_transcript(self, limit: int) -> list[TranscriptEntry]:
        if limit <= 0:
            return []
        return list(self.transcript)[-int(limit):]

    # ---- audio ----

    def queue_audio(self, data: str, *, now: float | None = None) -> None:
        self.audio_queue.append(QueuedAudioChunk(data=data, timestamp=now if now is not None else time.time()))

    def drain_audio(self) -> list[QueuedAudioChunk]:
        out = list(self.audio_queue)
        self.audio_queue.clear()
        return out

    def requeue_audio(self, chunks: Iterable[QueuedAudioChunk]) -> None:
        """Put chunks back at the head of the queue, keeping their order and timestamps."""
        self.audio_queue.extendleft(reversed(list(chunks)))

    def oldest_activity_ts(self) -> float:
        if self.audio_queue:
            return float(self.audio_queue[0].timestamp)
        return float(self.last_seen_at)

    # ---- tool calls ----

    def remember_call_id(self, call_id: str | None) -> bool:
        """Returns False when the id was already handled in an earlier frame."""
        if not call_id:
            return True
        if call_id in self.seen_call_ids:
            return False
        self.seen_call_ids.append(call_id)
        return True

    # ---- lifecycle ----

    def cancel_fallback(self) -> None:
        if self.fallback_token is not None:
            self.fallback_token.cancel()
            self.fallback_token = None
        task = self.fallback_task
        self.fallback_task = None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def close(self) -> None:
        """Hard teardown: no graceful drain, queued audio is discarded."""
        self.cancel_fallback()
        self.is_active = False
        self.audio_queue.clear()
        self.text_buffer.reset()
        link = self.upstream
        self.upstream = None
        if link is not None:
            with suppress(Exception):
                link.terminate()
        channel = self.channel
        self.channel = None
        if channel is not None:
            with suppress(Exception):
                channel.end()


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SessionStore:
    """
    In-process session table. Built once per app lifespan and handed to the
    relay; a background task periodically evicts idle sessions.
    """

    def __init__(
        self,
        *,
        sweep_interval_s: float = 60.0,
        inactive_timeout_s: float = 300.0,
        transcript_limit: int = TRANSCRIPT_LIMIT,
        pending_cards_max: int = 50,
        text_buffer_max_chars: int = 20000,
    ):
        self.sweep_interval_s = float(sweep_interval_s)
        self.inactive_timeout_s = float(inactive_timeout_s)
        self.transcript_limit = max(1, int(transcript_limit))
        self.pending_cards_max = int(pending_cards_max)
        self.text_buffer_max_chars = int(text_buffer_max_chars)
        self._sessions: dict[str, Session] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def ids(self) -> list[str]:
        return list(self._sessions.keys())

    def init(self, session_id: str, script: str, knowledge_cards: Iterable | None = None) -> Session:
        previous = self._sessions.pop(session_id, None)
        if previous is not None:
            previous.close()
        session = Session(
            session_id=session_id,
            script=script,
            knowledge_cards=list(knowledge_cards or []),
            transcript=deque(maxlen=self.transcript_limit),
            pending_cards=PendingCardQueue(self.pending_cards_max),
            text_buffer=DelimitedCardBuffer(self.text_buffer_max_chars),
        )
        self._sessions[session_id] = session
        log_important("session.init", session=session_id, replaced=previous is not None, script_chars=len(script or ""))
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def disconnect(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        log_important("session.disconnect", session=session_id)
        return True

    def sweep(self, now: float | None = None) -> list[str]:
        now_ts = float(now if now is not None else time.time())
        evicted: list[str] = []
        for session_id, session in list(self._sessions.items()):
            if session.is_active:
                continue
            if now_ts - session.oldest_activity_ts() <= self.inactive_timeout_s:
                continue
            self._sessions.pop(session_id, None)
            session.close()
            evicted.append(session_id)
        if evicted:
            log_important("session.sweep", evicted=len(evicted), remaining=len(self._sessions))
        return evicted

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._run_sweeper())

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for session_id in list(self._sessions.keys()):
            self.disconnect(session_id)
