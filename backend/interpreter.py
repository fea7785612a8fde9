"""
Inbound frame interpretation for the upstream live-audio connection.

Every frame is run through independent, side-effect free extractors that
produce a flat list of signals. The relay folds those signals into SSE events,
tool responses and fallback scheduling; nothing in here touches I/O.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from backend.audio import is_pcm_mime_type
from backend.knowledge_cards import (
    PRINT_KEYWORDS,
    KnowledgeCard,
    card_from_delimited_payload,
    has_print_keyword,
)

logger = logging.getLogger(__name__)

CARD_START_MARKER = "[KNOWLEDGE_CARD_START]"
CARD_END_MARKER = "[KNOWLEDGE_CARD_END]"
PRINT_TOOL_NAME = "autoPrintNote"

_CARD_SPAN_RE = re.compile(re.escape(CARD_START_MARKER) + r"([\s\S]*?)" + re.escape(CARD_END_MARKER))


@dataclass(frozen=True)
class AudioChunk:
    data: str
    mime_type: str


@dataclass(frozen=True)
class Transcription:
    source: str  # "input" (user) or "output" (model)
    text: str


@dataclass(frozen=True)
class ToolCall:
    call_id: Optional[str]
    name: str
    args: Any = None


@dataclass(frozen=True)
class DelimitedCard:
    card: KnowledgeCard


@dataclass(frozen=True)
class PrintIntent:
    text: str


Signal = Union[AudioChunk, Transcription, ToolCall, DelimitedCard, PrintIntent]


# ============================================
# TOOL CALLS
# ============================================

def _as_call(raw: Any) -> Optional[ToolCall]:
    if not isinstance(raw, dict):
        return None
    name = raw.get("name") or raw.get("functionName")
    if not name:
        return None
    args = raw.get("args")
    if args is None:
        args = raw.get("arguments")
    if args is None:
        args = raw.get("params")
    call_id = raw.get("id")
    return ToolCall(call_id=str(call_id) if call_id else None, name=str(name), args=args)


def _parts_of(container: Any) -> list:
    if not isinstance(container, dict):
        return []
    parts = container.get("parts")
    return parts if isinstance(parts, list) else []


def _model_turn(frame: dict) -> dict:
    server_content = frame.get("serverContent")
    if not isinstance(server_content, dict):
        return {}
    turn = server_content.get("modelTurn")
    return turn if isinstance(turn, dict) else {}


def extract_function_calls(frame: Any) -> list[ToolCall]:
    """Collect calls from every location the live API has been seen to use."""
    if not isinstance(frame, dict):
        return []
    raw_calls: list[Any] = []

    tool_call = frame.get("toolCall")
    if isinstance(tool_call, dict) and isinstance(tool_call.get("functionCalls"), list):
        raw_calls.extend(tool_call["functionCalls"])

    turn = _model_turn(frame)
    if turn.get("functionCall"):
        raw_calls.append(turn["functionCall"])
    for part in _parts_of(turn):
        if isinstance(part, dict) and part.get("functionCall"):
            raw_calls.append(part["functionCall"])

    candidates = frame.get("candidates")
    if isinstance(candidates, list):
        for candidate in candidates:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            for part in _parts_of(content):
                if isinstance(part, dict) and part.get("functionCall"):
                    raw_calls.append(part["functionCall"])

    calls: list[ToolCall] = []
    for raw in raw_calls:
        call = _as_call(raw)
        if call is not None:
            calls.append(call)
    return calls


def call_key(call: ToolCall) -> str:
    if call.call_id:
        return f"id:{call.call_id}"
    try:
        args_json = json.dumps(call.args if call.args is not None else {}, sort_keys=True, ensure_ascii=False)
    except (TypeError, ValueError):
        args_json = str(call.args)
    return f"name:{call.name or 'unknown'}|args:{args_json}"


def dedupe_calls(calls: Iterable[ToolCall]) -> list[ToolCall]:
    out: list[ToolCall] = []
    seen: set[str] = set()
    for call in calls:
        key = call_key(call)
        if key in seen:
            continue
        seen.add(key)
        out.append(call)
    return out


# ============================================
# DELIMITED CARDS IN STREAMED TEXT
# ============================================

def _parse_card_span(body: str) -> tuple[bool, Optional[KnowledgeCard]]:
    """Returns (parsed_ok, card). parsed_ok is False only for malformed JSON."""
    try:
        payload = json.loads(body.strip())
    except ValueError:
        return False, None
    card = card_from_delimited_payload(payload)
    if card is None:
        logger.warning(f"Invalid knowledge card format: {str(payload)[:200]}")
    return True, card


def _marker_prefix_tail(text: str) -> str:
    """Longest suffix of `text` that could still grow into the start marker."""
    max_len = min(len(text), len(CARD_START_MARKER) - 1)
    for size in range(max_len, 0, -1):
        if CARD_START_MARKER.startswith(text[-size:]):
            return text[-size:]
    return ""


class DelimitedCardBuffer:
    """
    Accumulates streamed model text and pulls out inline knowledge cards.

    Text is only retained while a start marker is waiting for its end marker
    (plus a short tail that may be the first half of a split start marker).
    A complete span with malformed JSON stays buffered and is retried when the
    next chunk arrives.
    """

    def __init__(self, max_chars: int = 20000):
        self.max_chars = int(max_chars)
        self._buffer = ""

    @property
    def text(self) -> str:
        return self._buffer

    def reset(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[KnowledgeCard]:
        if not chunk:
            return []
        self._buffer += chunk
        cards: list[KnowledgeCard] = []

        while True:
            match = _CARD_SPAN_RE.search(self._buffer)
            if not match:
                break
            parsed_ok, card = _parse_card_span(match.group(1))
            if not parsed_ok:
                # Possibly still streaming; keep everything and retry later.
                break
            if card is not None:
                cards.append(card)
            self._buffer = self._buffer[match.end():]

        start = self._buffer.find(CARD_START_MARKER)
        if start == -1:
            self._buffer = _marker_prefix_tail(self._buffer)
        elif start > 0 and not _CARD_SPAN_RE.search(self._buffer):
            self._buffer = self._buffer[start:]

        if self.max_chars > 0 and len(self._buffer) > self.max_chars:
            logger.warning(f"Knowledge card buffer exceeded {self.max_chars} chars; discarding")
            self._buffer = ""
        return cards


def extract_delimited_cards(text: str) -> list[KnowledgeCard]:
    """One-shot extraction for complete text (no buffering across calls)."""
    cards: list[KnowledgeCard] = []
    for match in _CARD_SPAN_RE.finditer(text or ""):
        parsed_ok, card = _parse_card_span(match.group(1))
        if not parsed_ok:
            logger.error(f"Failed to parse knowledge card JSON: {match.group(1)[:500]}")
            continue
        if card is not None:
            cards.append(card)
    return cards


# ============================================
# FRAME INTERPRETATION
# ============================================

def _transcription_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    return ""


def _text_signals(text: str, buffer: DelimitedCardBuffer, keywords: Iterable[str]) -> list[Signal]:
    signals: list[Signal] = [Transcription(source="output", text=text)]
    if has_print_keyword(text, keywords):
        signals.append(PrintIntent(text=text))
    signals.extend(DelimitedCard(card=c) for c in buffer.feed(text))
    return signals


def interpret_frame(
    frame: Any,
    buffer: DelimitedCardBuffer,
    keywords: Iterable[str] = PRINT_KEYWORDS,
) -> list[Signal]:
    """
    Turn one upstream frame into signals. A single frame may carry several
    kinds (tool calls next to audio next to transcription); each extractor runs
    regardless of what the others found.
    """
    if not isinstance(frame, dict):
        return []
    keywords = tuple(keywords)
    signals: list[Signal] = list(dedupe_calls(extract_function_calls(frame)))

    server_content = frame.get("serverContent")
    if not isinstance(server_content, dict):
        server_content = {}

    if "inputTranscription" in server_content:
        text = _transcription_text(server_content.get("inputTranscription"))
        if text:
            signals.append(Transcription(source="input", text=text))

    if "outputTranscription" in server_content:
        text = _transcription_text(server_content.get("outputTranscription"))
        if text:
            signals.append(Transcription(source="output", text=text))
            if has_print_keyword(text, keywords):
                signals.append(PrintIntent(text=text))

    turn = _model_turn(frame)
    partial = turn.get("partial")
    if isinstance(partial, str) and partial:
        signals.extend(DelimitedCard(card=c) for c in buffer.feed(partial))

    for part in _parts_of(turn):
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData")
        if isinstance(inline, dict) and is_pcm_mime_type(inline.get("mimeType")):
            signals.append(AudioChunk(data=str(inline.get("data") or ""), mime_type=str(inline.get("mimeType"))))
        elif isinstance(part.get("text"), str) and part["text"]:
            signals.extend(_text_signals(part["text"], buffer, keywords))

    candidates = frame.get("candidates")
    if isinstance(candidates, list):
        for candidate in candidates:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            for part in _parts_of(content):
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    signals.extend(DelimitedCard(card=c) for c in extract_delimited_cards(part["text"]))

    return signals
