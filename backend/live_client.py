"""
Client half of a live practice session.

`LiveSessionClient` talks to the relay over plain HTTP: POST for init / audio /
disconnect, and one long-lived GET consumed as server-sent events. Microphone
capture and speaker output go through sounddevice, which is imported only when
a device is actually opened so the client stays usable headless.
"""

import asyncio
import inspect
import json
import logging
import random
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

import httpx
import numpy as np

from backend.audio import INPUT_SAMPLE_RATE, OUTPUT_SAMPLE_RATE, decode_audio_chunk, encode_audio_chunk

logger = logging.getLogger(__name__)

LIVE_SESSION_PATH = "/api/live-session"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class LiveClientError(Exception):
    pass


def new_session_id(now_ms: int | None = None) -> str:
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    suffix = "".join(random.choice(_BASE36) for _ in range(9))
    return f"session_{ms}_{suffix}"


def parse_sse_line(line: str) -> Optional[dict]:
    """Returns the decoded payload of a `data:` line; comments and other fields yield None."""
    if not line or line.startswith(":"):
        return None
    if not line.startswith("data:"):
        return None
    body = line[5:].strip()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning(f"Unparseable SSE payload: {body[:200]}")
        return None
    return payload if isinstance(payload, dict) else None


# ============================================
# PLAYBACK
# ============================================

class PlaybackScheduler:
    """
    Gapless timeline for 24 kHz model audio. Each buffer starts at
    max(next_start, current_time), so back-to-back chunks play without gaps
    and a late chunk starts immediately instead of in the past.

    `render` is called from the audio device thread; `schedule` from the event
    loop.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE):
        self.sample_rate = int(sample_rate)
        self._lock = threading.Lock()
        self._frames_rendered = 0
        self._next_start_frame = 0
        self._segments: deque[tuple[int, np.ndarray]] = deque()

    @property
    def current_time(self) -> float:
        return self._frames_rendered / float(self.sample_rate)

    @property
    def next_start_time(self) -> float:
        return self._next_start_frame / float(self.sample_rate)

    def schedule(self, samples) -> float:
        arr = np.asarray(samples, dtype=np.float32).reshape(-1)
        with self._lock:
            start = max(self._next_start_frame, self._frames_rendered)
            if arr.size:
                self._segments.append((start, arr))
            self._next_start_frame = start + int(arr.size)
        return start / float(self.sample_rate)

    def render(self, frames: int) -> np.ndarray:
        frames = max(0, int(frames))
        out = np.zeros(frames, dtype=np.float32)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            for seg_start, seg in self._segments:
                seg_end = seg_start + seg.size
                if seg_end <= block_start or seg_start >= block_end:
                    continue
                lo = max(seg_start, block_start)
                hi = min(seg_end, block_end)
                out[lo - block_start:hi - block_start] += seg[lo - seg_start:hi - seg_start]
            while self._segments and self._segments[0][0] + self._segments[0][1].size <= block_end:
                self._segments.popleft()
            self._frames_rendered = block_end
        return np.clip(out, -1.0, 1.0)

    def reset(self) -> None:
        with self._lock:
            self._segments.clear()
            self._next_start_frame = self._frames_rendered


class SoundDevicePlayer:
    def __init__(self, scheduler: PlaybackScheduler, *, blocksize: int = 1024, device=None):
        self.scheduler = scheduler
        self.blocksize = int(blocksize)
        self.device = device
        self._stream = None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        def _callback(outdata, frames, time_info, status):
            if status:
                logger.debug(f"Playback status: {status}")
            outdata[:, 0] = self.scheduler.render(frames)

        self._stream = sd.OutputStream(
            samplerate=self.scheduler.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self.blocksize,
            device=self.device,
            callback=_callback,
        )
        self._stream.start()

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Failed to close playback stream: {e}")


class MicrophoneCapture:
    """16 kHz mono capture; each 4096-frame block is handed to `on_samples` on the event loop."""

    def __init__(
        self,
        on_samples: Callable[[np.ndarray], Any],
        loop: asyncio.AbstractEventLoop,
        *,
        sample_rate: int = INPUT_SAMPLE_RATE,
        blocksize: int = 4096,
        device=None,
    ):
        self.on_samples = on_samples
        self.loop = loop
        self.sample_rate = int(sample_rate)
        self.blocksize = int(blocksize)
        self.device = device
        self._stream = None

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        def _callback(indata, frames, time_info, status):
            if status:
                logger.debug(f"Capture status: {status}")
            block = indata[:, 0].copy()
            self.loop.call_soon_threadsafe(self.on_samples, block)

        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self.blocksize,
            device=self.device,
            callback=_callback,
        )
        self._stream.start()

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Failed to close microphone stream: {e}")


# ============================================
# SESSION CLIENT
# ============================================

class LiveSessionClient:
    def __init__(
        self,
        base_url: str,
        script: str,
        knowledge_cards: list | None = None,
        *,
        on_connect: Callable | None = None,
        on_disconnect: Callable | None = None,
        on_error: Callable | None = None,
        on_transcription: Callable | None = None,
        on_knowledge_card: Callable | None = None,
        audio_output: bool = True,
        reconnect_delay_s: float = 1.0,
        max_reconnects: int = 5,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.script = script
        self.knowledge_cards = list(knowledge_cards or [])
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.on_error = on_error
        self.on_transcription = on_transcription
        self.on_knowledge_card = on_knowledge_card
        self.reconnect_delay_s = float(reconnect_delay_s)
        self.max_reconnects = int(max_reconnects)

        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(30.0, read=None))
        self._owns_http = http_client is None

        self.session_id: str | None = None
        self.connected = False
        self.playback = PlaybackScheduler(OUTPUT_SAMPLE_RATE)
        self._player = SoundDevicePlayer(self.playback) if audio_output else None
        self._mic: MicrophoneCapture | None = None
        self._audio_queue: deque[str] = deque()
        self._flushing = False
        self._sender_task: asyncio.Task | None = None
        self._events_task: asyncio.Task | None = None
        self._closing = False
        self._connected_event = asyncio.Event()

    # ---- callbacks ----

    async def _emit(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Live session callback failed")

    async def _report_error(self, message: str) -> None:
        logger.error(f"[{self.session_id}] {message}")
        await self._emit(self.on_error, message)

    # ---- HTTP ----

    async def _post(self, body: dict) -> dict:
        try:
            resp = await self._http.post(LIVE_SESSION_PATH, json=body)
        except httpx.HTTPError as e:
            raise LiveClientError(f"Request failed: {e}") from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            message = data.get("error") if isinstance(data, dict) else None
            raise LiveClientError(message or f"HTTP {resp.status_code}")
        return data if isinstance(data, dict) else {}

    async def connect(self) -> str:
        self._closing = False
        self.session_id = new_session_id()
        try:
            await self._post({
                "sessionId": self.session_id,
                "action": "init",
                "script": self.script,
                "knowledgeCards": self.knowledge_cards,
            })
        except LiveClientError as e:
            await self._report_error(f"Failed to initialize session: {e}")
            raise
        if self._player is not None:
            try:
                self._player.start()
            except Exception as e:
                logger.warning(f"Audio output unavailable, playback disabled: {e}")
                self._player = None
        self._events_task = asyncio.create_task(self._consume_events())
        return self.session_id

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ---- SSE ----

    async def _consume_events(self) -> None:
        attempts = 0
        while not self._closing:
            fatal = False
            try:
                async with self._http.stream("GET", LIVE_SESSION_PATH, params={"sessionId": self.session_id}) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        await self._report_error(f"Event stream rejected: HTTP {resp.status_code}")
                        fatal = True
                    else:
                        async for line in resp.aiter_lines():
                            event = parse_sse_line(line)
                            if event is None:
                                continue
                            if await self.handle_event(event):
                                attempts = 0
                            elif event.get("type") == "error":
                                fatal = True
            except asyncio.CancelledError:
                raise
            except httpx.HTTPError as e:
                await self._report_error(f"Event stream error: {e}")

            self.connected = False
            self._connected_event.clear()
            if self._closing or fatal:
                break
            attempts += 1
            if attempts > self.max_reconnects:
                await self._report_error("Event stream ended; giving up after repeated reconnects")
                break
            logger.info(f"[{self.session_id}] Event stream ended, reconnecting ({attempts}/{self.max_reconnects})")
            await asyncio.sleep(self.reconnect_delay_s)

    async def handle_event(self, event: dict) -> bool:
        """Apply one SSE payload. Returns True for `connected`."""
        kind = event.get("type")
        if kind == "connected":
            self.connected = True
            self._connected_event.set()
            await self._emit(self.on_connect)
            await self._flush_audio_queue()
            return True
        if kind == "audio":
            data = event.get("data")
            if isinstance(data, str) and data:
                self.playback.schedule(decode_audio_chunk(data))
        elif kind == "transcription":
            await self._emit(self.on_transcription, event.get("source"), event.get("text"))
        elif kind == "knowledgeCard":
            card = event.get("card")
            if isinstance(card, dict):
                await self._emit(self.on_knowledge_card, card)
        elif kind == "error":
            await self._report_error(str(event.get("message") or "Unknown error"))
        elif kind != "ping":
            logger.debug(f"Ignoring SSE event type {kind!r}")
        return False

    # ---- audio out ----

    # Every chunk goes through `_audio_queue` and only one flush runs at a time,
    # so live audio never overtakes audio queued before `connected`.

    async def push_audio(self, samples) -> None:
        self._audio_queue.append(encode_audio_chunk(samples))
        if self.connected:
            await self._flush_audio_queue()

    def queue_samples(self, samples) -> None:
        """Non-blocking variant for capture callbacks; sending happens on the client's sender task."""
        self._audio_queue.append(encode_audio_chunk(samples))
        if self.connected:
            self._start_sender()

    def _start_sender(self) -> None:
        if self._flushing or (self._sender_task is not None and not self._sender_task.done()):
            return
        self._sender_task = asyncio.create_task(self._flush_audio_queue())
        self._sender_task.add_done_callback(self._on_sender_done)

    def _on_sender_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.session_id}] Audio sender failed: {exc!r}")

    async def _send_audio(self, data: str) -> None:
        try:
            await self._post({"sessionId": self.session_id, "action": "send", "audioData": data})
        except LiveClientError as e:
            await self._report_error(f"Failed to send audio: {e}")

    async def _flush_audio_queue(self) -> None:
        if self._flushing:
            return
        self._flushing = True
        try:
            while self._audio_queue and self.connected:
                await self._send_audio(self._audio_queue.popleft())
        finally:
            self._flushing = False

    @property
    def queued_audio(self) -> int:
        return len(self._audio_queue)

    def start_recording(self, device=None) -> None:
        if self._mic is not None and self._mic.running:
            return
        loop = asyncio.get_running_loop()
        self._mic = MicrophoneCapture(self.queue_samples, loop, device=device)
        self._mic.start()

    def stop_recording(self) -> None:
        if self._mic is not None:
            self._mic.stop()
            self._mic = None

    async def disconnect(self) -> None:
        self._closing = True
        self.stop_recording()
        for task in (self._sender_task, self._events_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Live session task failed")
        self._sender_task = None
        self._events_task = None

        if self.session_id:
            try:
                await self._post({"sessionId": self.session_id, "action": "disconnect"})
            except LiveClientError as e:
                logger.warning(f"[{self.session_id}] Disconnect request failed: {e}")

        self._audio_queue.clear()
        self.connected = False
        self._connected_event.clear()
        self.playback.reset()
        if self._player is not None:
            self._player.close()
        if self._owns_http:
            await self._http.aclose()
        await self._emit(self.on_disconnect)
