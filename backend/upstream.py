import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlencode

import websockets

from backend.audio import INPUT_MIME_TYPE
from backend.interpreter import PRINT_TOOL_NAME
from backend.knowledge_cards import NOTE_TYPES, SOURCE_MARKER
from backend.log_events import log_important

logger = logging.getLogger(__name__)

LIVE_API_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
)
DEFAULT_MODELS = (
    "models/gemini-2.5-flash-native-audio-preview-12-2025",
    "models/gemini-2.0-flash-exp",
)
DEFAULT_VOICE = "Aoede"
TOOL_RESULT_TEXT = "已打印"
INITIAL_PROMPT_TEXT = "请直接开始实时练习并说第一句话，不要询问我是否准备好。"

FrameListener = Callable[[dict], Awaitable[None]]


class UpstreamConnectError(Exception):
    """No model candidate could be connected; terminal for this subscription."""


class ModelUnavailableError(UpstreamConnectError):
    """The upstream closed the handshake because the requested model is unusable."""


# ============================================
# FRAMES
# ============================================

def build_system_instruction(script: str) -> str:
    return f"""你是一位亲切友好的AI导师，正在帮助用户进行学习练习。请使用中文进行对话，偶尔可以包含英文单词或短语，语气自然、耐心。
在实时对话模式下，请完全基于当前对话内容生成知识卡片，不要使用预生成的知识卡片。

以下是练习脚本：
{script}

【用户犹豫检测】出现以下情况时判定用户犹豫，需要生成知识卡片：
1. 用户沉默超过 3 秒钟
2. 说话卡壳，伴随口癖："呃..."、"啊..."、"嗯..."、"那个..."，或重复表达"这个...这个..."
3. 困惑性表达："我不太明白"、"什么意思"、"没听懂"、"为什么..."
4. 重复询问相同问题

【重要内容】关键概念、公式、定义，易混淆的知识点，常见错误或易错点，也需要生成知识卡片。

【知识卡片生成方式】
请调用 {PRINT_TOOL_NAME} 函数生成知识卡片，并用自然语言告知用户，例如："这个知识点很重要，我已经为你整理好了，可以打印出来方便复习。"
只要你在对话中提到"打印 / 知识卡片 / 知识小票 / print"，必须同步调用 {PRINT_TOOL_NAME}。
- content: 一个具体的事实性知识点，简洁明了，适合小票尺寸，包含来源标记 "{SOURCE_MARKER}"
- type: formula（数学公式）、definition（核心定义）、fact（知识点）、summary（精彩摘要）

请鼓励学习者，及时纠正错误，回答简洁明了。"""


def build_setup_frame(model: str, script: str, voice: str = DEFAULT_VOICE) -> dict:
    return {
        "setup": {
            "model": model,
            "tools": [{
                "function_declarations": [{
                    "name": PRINT_TOOL_NAME,
                    "description": "当检测到用户犹豫或重要知识点时，自动生成知识卡片以便打印保存。在调用此函数前，请通过自然语言告知用户。",
                    "parameters": {
                        "type": "OBJECT",
                        "description": "当检测到重要的公式、定义或核心知识点时，自动打印一张知识小票。",
                        "properties": {
                            "content": {
                                "type": "STRING",
                                "description": "要打印的知识内容（如数学公式、化学方程式或核心定义）。",
                            },
                            "type": {
                                "type": "STRING",
                                "enum": list(NOTE_TYPES),
                                "description": "知识的类别。",
                            },
                        },
                        "required": ["content", "type"],
                    },
                }],
            }],
            "tool_config": {
                "function_calling_config": {
                    "mode": "AUTO",
                    "allowed_function_names": [PRINT_TOOL_NAME],
                },
            },
            "generation_config": {
                "response_modalities": ["AUDIO"],
                "speech_config": {
                    "voice_config": {
                        "prebuilt_voice_config": {"voice_name": voice},
                    },
                },
            },
            "system_instruction": {
                "parts": [{"text": build_system_instruction(script)}],
            },
        }
    }


def build_initial_prompt_frame(text: str = INITIAL_PROMPT_TEXT) -> dict:
    return {
        "client_content": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turn_complete": True,
        }
    }


def build_audio_frame(data: str, mime_type: str = INPUT_MIME_TYPE) -> dict:
    return {
        "realtime_input": {
            "media_chunks": [{"mime_type": mime_type, "data": data}],
        }
    }


def build_tool_response_frame(call_id: Optional[str], name: str, result: str = TOOL_RESULT_TEXT) -> dict:
    response: dict[str, Any] = {"name": name, "response": {"result": result}}
    if call_id:
        response = {"id": call_id, **response}
    return {"toolResponse": {"functionResponses": [response]}}


def decode_frame(raw: Any) -> Optional[dict]:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return frame if isinstance(frame, dict) else None


def _close_details(exc: BaseException) -> tuple[Optional[int], str]:
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is not None:
        return getattr(rcvd, "code", None), str(getattr(rcvd, "reason", "") or "")
    return None, str(exc)


def _looks_like_model_unavailable(reason: str) -> bool:
    r = (reason or "").lower()
    return "model" in r or "invalid" in r


# ============================================
# LINK
# ============================================

class UpstreamLink:
    """
    One open socket to the live API. Inbound frames go to exactly one listener
    at a time; attaching a listener replaces the previous one so a reconnected
    SSE subscriber never shares frames with a stale one.

    Reading starts when the first listener attaches, so frames received during
    the handshake are delivered rather than dropped.
    """

    def __init__(
        self,
        session_id: str,
        ws: Any,
        model: str,
        *,
        on_close: Optional[Callable[["UpstreamLink"], None]] = None,
        initial_frames: Iterable[dict] = (),
    ):
        self.session_id = session_id
        self.ws = ws
        self.model = model
        self._on_close = on_close
        self._initial_frames = list(initial_frames)
        self._listener: Optional[FrameListener] = None
        self._closed = False
        self._terminated = False
        self._reader: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listener(self) -> Optional[FrameListener]:
        return self._listener

    def set_listener(self, listener: FrameListener) -> None:
        self._listener = listener
        self.start()

    def remove_listener(self, listener: FrameListener) -> None:
        if self._listener is listener:
            self._listener = None

    def start(self) -> None:
        if self._reader is None and not self._terminated:
            initial, self._initial_frames = self._initial_frames, []
            self._reader = asyncio.create_task(self._read_loop(initial))

    async def send_json(self, payload: dict) -> bool:
        if self._closed:
            return False
        try:
            await self.ws.send(json.dumps(payload, ensure_ascii=False))
            return True
        except Exception as e:
            logger.warning(f"[{self.session_id}] Upstream send failed: {e}")
            return False

    async def send_audio(self, data: str, mime_type: str = INPUT_MIME_TYPE) -> bool:
        return await self.send_json(build_audio_frame(data, mime_type))

    async def send_tool_response(self, call_id: Optional[str], name: str) -> bool:
        return await self.send_json(build_tool_response_frame(call_id, name))

    async def _dispatch(self, frame: dict) -> None:
        listener = self._listener
        if listener is None:
            logger.debug(f"[{self.session_id}] Upstream frame dropped (no listener)")
            return
        try:
            await listener(frame)
        except Exception:
            logger.exception(f"[{self.session_id}] Failed to handle upstream frame")

    async def _read_loop(self, initial_frames: list[dict]) -> None:
        try:
            for frame in initial_frames:
                await self._dispatch(frame)
            async for raw in self.ws:
                frame = decode_frame(raw)
                if frame is None:
                    logger.error(f"[{self.session_id}] Failed to parse upstream message: {str(raw)[:200]}")
                    continue
                await self._dispatch(frame)
            log_important("upstream.closed", session=self.session_id, model=self.model)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            code, reason = _close_details(e)
            log_important(
                "upstream.closed",
                level=logging.WARNING,
                session=self.session_id,
                model=self.model,
                code=code,
                reason=reason,
            )
            if _looks_like_model_unavailable(reason):
                logger.warning(f"[{self.session_id}] Model {self.model} may not be available, consider using fallback model")
        except Exception:
            logger.exception(f"[{self.session_id}] Upstream WebSocket error")
        finally:
            self._closed = True
            self._listener = None
            if not self._terminated and self._on_close is not None:
                try:
                    self._on_close(self)
                except Exception:
                    logger.exception(f"[{self.session_id}] Upstream close callback failed")

    def terminate(self) -> None:
        """Drop the connection without draining pending traffic."""
        if self._terminated:
            return
        self._terminated = True
        self._closed = True
        self._listener = None
        reader = self._reader
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._close_quietly())

    async def _close_quietly(self) -> None:
        with suppress(Exception):
            await self.ws.close()


# ============================================
# CONNECTOR
# ============================================

class UpstreamConnector:
    def __init__(
        self,
        api_key: str,
        *,
        url: str = LIVE_API_URL,
        models: Iterable[str] = DEFAULT_MODELS,
        voice: str = DEFAULT_VOICE,
        connect_timeout_s: float = 10.0,
        connect_fn: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.api_key = api_key
        self.url = url
        self.models = [m for m in models if str(m or "").strip()] or list(DEFAULT_MODELS)
        self.voice = voice
        self.connect_timeout_s = float(connect_timeout_s)
        self._connect_fn = connect_fn or websockets.connect

    def _target_url(self) -> str:
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode({'key': self.api_key})}"

    async def _open(self, session, model: str, on_close) -> UpstreamLink:
        ws = await self._connect_fn(self._target_url(), max_size=None)
        try:
            await ws.send(json.dumps(build_setup_frame(model, session.script, self.voice), ensure_ascii=False))
            try:
                first_raw = await ws.recv()
            except websockets.ConnectionClosed as e:
                code, reason = _close_details(e)
                if _looks_like_model_unavailable(reason):
                    raise ModelUnavailableError(f"Model {model} not available ({code}: {reason})") from e
                raise UpstreamConnectError(f"Connection closed during setup ({code}: {reason})") from e
        except BaseException:
            with suppress(Exception):
                await ws.close()
            raise

        initial: list[dict] = []
        first = decode_frame(first_raw)
        if first is not None and "setupComplete" not in first:
            initial.append(first)
        return UpstreamLink(session.session_id, ws, model, on_close=on_close, initial_frames=initial)

    async def connect(self, session, *, on_close=None) -> UpstreamLink:
        """
        Try each model in order until one completes the handshake. Timeouts,
        model rejections and socket errors all advance to the next candidate.
        """
        last_error = "no models configured"
        for model in self.models:
            try:
                link = await asyncio.wait_for(self._open(session, model, on_close), timeout=self.connect_timeout_s)
            except asyncio.TimeoutError:
                last_error = "Connection timeout"
            except UpstreamConnectError as e:
                last_error = str(e)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
            else:
                log_important("upstream.connected", session=session.session_id, model=model)
                if not session.has_sent_initial_prompt:
                    session.has_sent_initial_prompt = True
                    await link.send_json(build_initial_prompt_frame())
                return link
            log_important(
                "upstream.connect.failed",
                level=logging.WARNING,
                session=session.session_id,
                model=model,
                error=last_error,
            )
        raise UpstreamConnectError(last_error)
