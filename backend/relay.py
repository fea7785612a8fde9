"""
SSE side of the live practice relay.

One `LiveSessionRelay` serves every session. A GET subscription owns an
`EventChannel`; upstream frames for the session are interpreted into signals
and folded into channel writes, tool responses and fallback timers here.
"""

import asyncio
import json
import logging
import time
from contextlib import suppress
from typing import AsyncIterator, Iterable, Optional

from backend.audio import INPUT_MIME_TYPE
from backend.card_fallback import FallbackCardGenerator
from backend.interpreter import (
    PRINT_TOOL_NAME,
    AudioChunk,
    DelimitedCard,
    PrintIntent,
    Signal,
    ToolCall,
    Transcription,
    interpret_frame,
)
from backend.knowledge_cards import PRINT_KEYWORDS, KnowledgeCard, build_knowledge_card, has_print_keyword, parse_function_args
from backend.log_events import log_important
from backend.session_store import FallbackToken, Session, SessionStore
from backend.upstream import UpstreamConnectError, UpstreamConnector, UpstreamLink

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND_MESSAGE = "Session not found. Please initialize with POST first."


class ChannelClosedError(Exception):
    pass


class SessionNotFoundError(LookupError):
    pass


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


_END = object()


class EventChannel:
    """
    Outgoing SSE events for one GET subscription. Writes never block: a closed
    channel raises ChannelClosedError and a lagging consumer raises QueueFull,
    so callers can decide whether to queue the payload elsewhere.
    """

    def __init__(self, max_events: int = 512):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, int(max_events)) + 1)
        self._max_events = max(1, int(max_events))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, payload: dict) -> None:
        if self._closed:
            raise ChannelClosedError("event stream already ended")
        if self._queue.qsize() >= self._max_events:
            raise asyncio.QueueFull()
        self._queue.put_nowait(format_sse(payload))

    def end(self) -> None:
        if self._closed:
            return
        self._closed = True
        # One slot is always reserved for the terminator.
        with suppress(asyncio.QueueFull):
            self._queue.put_nowait(_END)

    async def stream(self, keepalive_s: float = 30.0) -> AsyncIterator[str]:
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                if self._closed:
                    return
                yield format_sse({"type": "ping"})
                continue
            if item is _END:
                return
            yield item


class LiveSessionRelay:
    def __init__(
        self,
        store: SessionStore,
        connector: UpstreamConnector,
        card_generator: FallbackCardGenerator,
        *,
        print_keywords: Iterable[str] = PRINT_KEYWORDS,
        fallback_delay_s: float = 5.2,
        fallback_cooldown_s: float = 3.0,
        keepalive_s: float = 30.0,
        channel_max_events: int = 512,
        input_mime_type: str = INPUT_MIME_TYPE,
    ):
        self.store = store
        self.connector = connector
        self.card_generator = card_generator
        self.print_keywords = tuple(print_keywords)
        self.fallback_delay_s = float(fallback_delay_s)
        self.fallback_cooldown_s = float(fallback_cooldown_s)
        self.keepalive_s = float(keepalive_s)
        self.channel_max_events = int(channel_max_events)
        self.input_mime_type = input_mime_type

    # ============================================
    # AUDIO IN
    # ============================================

    async def send_audio(self, session_id: str, data: str) -> bool:
        """Forward one base64 PCM16 chunk upstream. Returns True when it was queued instead."""
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.last_seen_at = time.time()
        link = session.upstream
        if link is not None and not link.closed:
            if await link.send_audio(data, self.input_mime_type):
                return False
        session.queue_audio(data)
        return True

    async def _flush_audio_queue(self, session: Session, link: UpstreamLink) -> None:
        chunks = session.drain_audio()
        for index, chunk in enumerate(chunks):
            if link.closed or not await link.send_audio(chunk.data, self.input_mime_type):
                # Unsent chunks go back in front so the next subscription keeps FIFO order.
                session.requeue_audio(chunks[index:])
                logger.warning(f"[{session.session_id}] Upstream closed mid-flush; {len(chunks) - index} chunk(s) requeued")
                return

    # ============================================
    # KNOWLEDGE CARD DELIVERY
    # ============================================

    def try_send_knowledge_card(self, session: Session, card: KnowledgeCard) -> bool:
        channel = session.channel
        if channel is None or channel.closed:
            session.pending_cards.append(card)
            return False
        try:
            channel.write({"type": "knowledgeCard", "card": card.to_dict()})
            return True
        except Exception as e:
            logger.error(f"[{session.session_id}] Failed to write knowledge card SSE data: {e!r}")
            session.pending_cards.append(card)
            return False

    def _write_card_direct(self, session: Session, card: KnowledgeCard) -> bool:
        channel = session.channel
        if channel is None or channel.closed:
            return False
        try:
            channel.write({"type": "knowledgeCard", "card": card.to_dict()})
            return True
        except Exception as e:
            logger.error(f"[{session.session_id}] Failed to flush knowledge card: {e!r}")
            return False

    def flush_pending_knowledge_cards(self, session: Session) -> int:
        if not len(session.pending_cards):
            return 0
        remaining = session.pending_cards.flush(lambda card: self._write_card_direct(session, card))
        if remaining:
            logger.warning(f"[{session.session_id}] {remaining} knowledge card(s) still pending")
        return remaining

    def _deliver_card(self, session: Session, card: KnowledgeCard, *, origin: str) -> None:
        sent = self.try_send_knowledge_card(session, card)
        log_important(
            "card.delivered" if sent else "card.queued",
            level=logging.INFO if sent else logging.WARNING,
            session=session.session_id,
            origin=origin,
            title=card.title,
        )

    # ============================================
    # FALLBACK
    # ============================================

    def schedule_print_fallback(self, session: Session, trigger_text: str) -> Optional[FallbackToken]:
        if not has_print_keyword(trigger_text, self.print_keywords):
            return None
        now = time.monotonic()
        session.last_print_intent_at = now
        session.cancel_fallback()
        token = FallbackToken(scheduled_at=now, trigger_text=trigger_text)
        session.fallback_token = token
        session.fallback_task = asyncio.create_task(self._run_fallback(session, token))
        return token

    def _fallback_still_valid(self, session: Session, token: FallbackToken) -> bool:
        if token.cancelled or session.fallback_token is not token:
            return False
        if self.store.get(session.session_id) is not session:
            return False
        if session.last_function_call_at is not None and session.last_function_call_at >= token.scheduled_at:
            return False
        return True

    async def _run_fallback(self, session: Session, token: FallbackToken) -> None:
        await asyncio.sleep(self.fallback_delay_s)
        if not self._fallback_still_valid(session, token):
            return
        now = time.monotonic()
        if session.last_fallback_at is not None and now - session.last_fallback_at < self.fallback_cooldown_s:
            return

        text = (session.latest_transcript("output") or token.trigger_text or "").strip()
        if not text:
            return

        session.last_fallback_at = now
        card = await self.card_generator.generate(session, text)
        # A superseding intent may have landed while generation was in flight.
        if token.cancelled:
            return
        if session.fallback_token is token:
            session.fallback_token = None
            session.fallback_task = None
        self._deliver_card(session, card, origin="fallback")

    # ============================================
    # UPSTREAM FRAMES
    # ============================================

    def _write_event(self, session: Session, channel: EventChannel, payload: dict) -> None:
        try:
            channel.write(payload)
        except Exception as e:
            logger.error(f"[{session.session_id}] Failed to write {payload.get('type')} SSE data: {e!r}")

    async def _handle_tool_call(self, session: Session, call: ToolCall) -> None:
        if call.name != PRINT_TOOL_NAME:
            return
        if not session.remember_call_id(call.call_id):
            logger.debug(f"[{session.session_id}] Duplicate function call {call.call_id} ignored")
            return

        parsed = parse_function_args(call.args)
        content = (parsed or {}).get("content")
        if not content:
            logger.warning(f"[{session.session_id}] Function call missing content: {call.args!r}")
            return

        session.last_function_call_at = time.monotonic()
        card = build_knowledge_card(content, (parsed or {}).get("type"))
        self._deliver_card(session, card, origin="function_call")

        link = session.upstream
        if link is not None and not link.closed:
            await link.send_tool_response(call.call_id, call.name)

    async def apply_signal(self, session: Session, channel: EventChannel, signal: Signal) -> None:
        if isinstance(signal, ToolCall):
            await self._handle_tool_call(session, signal)
        elif isinstance(signal, Transcription):
            session.add_transcript(signal.source, signal.text)
            self._write_event(session, channel, {"type": "transcription", "source": signal.source, "text": signal.text})
        elif isinstance(signal, PrintIntent):
            self.schedule_print_fallback(session, signal.text)
        elif isinstance(signal, AudioChunk):
            self._write_event(session, channel, {"type": "audio", "data": signal.data, "mimeType": signal.mime_type})
        elif isinstance(signal, DelimitedCard):
            self._deliver_card(session, signal.card, origin="delimited_text")

    async def handle_frame(self, session: Session, channel: EventChannel, frame: dict) -> None:
        if channel.closed:
            return
        signals = interpret_frame(frame, session.text_buffer, self.print_keywords)
        calls = [s for s in signals if isinstance(s, ToolCall)]
        if calls:
            names = ", ".join(c.name for c in calls if c.name)
            logger.info(f"[{session.session_id}] Function call detected: {names}")
        for signal in signals:
            try:
                await self.apply_signal(session, channel, signal)
            except Exception:
                logger.exception(f"[{session.session_id}] Failed to apply {type(signal).__name__} signal")

    # ============================================
    # SSE SUBSCRIPTION
    # ============================================

    def _on_upstream_closed(self, session: Session, link: UpstreamLink) -> None:
        if session.upstream is not link:
            return
        session.upstream = None
        session.is_active = False
        channel = session.channel
        if channel is not None:
            # Ending the stream lets the client reconnect and renegotiate.
            channel.end()

    def _session_is_current(self, session: Session) -> bool:
        return self.store.get(session.session_id) is session

    async def _connect_upstream(self, session: Session) -> Optional[UpstreamLink]:
        def _on_close(closed_link: UpstreamLink) -> None:
            self._on_upstream_closed(session, closed_link)

        link = await self.connector.connect(session, on_close=_on_close)
        if not self._session_is_current(session):
            # Disconnected or swept during the handshake.
            link.terminate()
            log_important("upstream.discarded", level=logging.WARNING, session=session.session_id)
            return None
        session.upstream = link
        return link

    async def _ensure_upstream(self, session: Session) -> Optional[UpstreamLink]:
        """
        Returns the session's live link, opening one if needed. Concurrent
        subscribers share a single in-flight handshake. None means the session
        went away before the handshake finished.
        """
        link = session.upstream
        if link is not None and not link.closed:
            return link
        if link is not None:
            link.terminate()
            session.upstream = None

        task = session.connecting
        if task is None or task.done():
            task = asyncio.create_task(self._connect_upstream(session))
            session.connecting = task

            def _clear(done: asyncio.Task) -> None:
                if session.connecting is done:
                    session.connecting = None

            task.add_done_callback(_clear)
        # Shielded so a cancelled subscriber does not abort the handshake for the others.
        return await asyncio.shield(task)

    async def stream(self, session_id: str) -> AsyncIterator[str]:
        """Event stream for `GET ?sessionId=`; the first chunk is always the `:ok` comment."""
        yield ":ok\n\n"

        session = self.store.get(session_id)
        if session is None:
            log_important("sse.session_missing", level=logging.WARNING, session=session_id)
            yield format_sse({"type": "error", "message": SESSION_NOT_FOUND_MESSAGE})
            return

        if session.channel is not None:
            session.channel.end()
        channel = EventChannel(self.channel_max_events)
        session.channel = channel
        session.is_active = True
        session.last_seen_at = time.time()
        link: Optional[UpstreamLink] = None

        async def _listener(frame: dict) -> None:
            await self.handle_frame(session, channel, frame)

        log_important("sse.subscribed", session=session_id)
        try:
            try:
                link = await self._ensure_upstream(session)
            except UpstreamConnectError as e:
                log_important("sse.connect_failed", level=logging.ERROR, session=session_id, error=str(e))
                yield format_sse({"type": "error", "message": f"Failed to connect: {e}"})
                return

            if link is None or channel.closed or not self._session_is_current(session):
                # Superseded by a newer subscription, or the session ended mid-handshake.
                log_important("sse.superseded", session=session_id)
                return

            link.set_listener(_listener)
            self._write_event(session, channel, {"type": "connected"})
            self.flush_pending_knowledge_cards(session)
            await self._flush_audio_queue(session, link)

            async for chunk in channel.stream(self.keepalive_s):
                yield chunk
        finally:
            channel.end()
            if session.channel is channel:
                session.channel = None
                session.is_active = False
                session.cancel_fallback()
                session.text_buffer.reset()
            if link is not None:
                link.remove_listener(_listener)
            session.last_seen_at = time.time()
            log_important("sse.closed", session=session_id)
