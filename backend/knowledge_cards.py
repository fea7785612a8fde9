import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

SOURCE_MARKER = "Source: 实时对话"
FALLBACK_SOURCE = "ai_realtime_fallback"
CARD_TYPE = "knowledgeCard"

DEFAULT_TITLE = "知识要点"
DEFAULT_CONTENT = "暂无明确知识点，记录当前对话要点。"
DEFAULT_TAGS = ("对话", "要点")
MAX_TAGS = 5
DEFAULT_MAX_CHARS = 220

PRINT_KEYWORDS = ("已为你整理", "打印", "知识卡片", "知识小票", "print job", "printing", "print")

NOTE_TYPES = ("formula", "summary", "definition", "fact")
_TITLE_BY_TYPE = {
    "formula": "数学公式",
    "definition": "核心定义",
    "fact": "知识点",
    "summary": "精彩摘要",
}
_TAGS_BY_TYPE = {
    "formula": ["数学", "公式"],
    "definition": ["定义"],
    "fact": ["知识点"],
    "summary": ["摘要"],
}

_CONTENT_PAIR_RE = re.compile(r"content\s*[:=]\s*[\"']?([\s\S]*?)[\"']?(?:,|$)", re.IGNORECASE)
_TYPE_PAIR_RE = re.compile(r"type\s*[:=]\s*[\"']?([a-zA-Z_-]+)[\"']?", re.IGNORECASE)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class KnowledgeCard:
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
    type: str = CARD_TYPE
    source: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
        }
        if self.source:
            out["source"] = self.source
        return out


def ensure_source_tag(content: Any) -> str:
    trimmed = str(content or "").strip()
    if not trimmed:
        return SOURCE_MARKER
    return trimmed if SOURCE_MARKER in trimmed else f"{trimmed} {SOURCE_MARKER}"


def _truncate(content: str, max_chars: int) -> str:
    if max_chars > 0 and len(content) > max_chars:
        return f"{content[:max_chars]}..."
    return content


def build_knowledge_card(content: str, note_type: Any = None) -> KnowledgeCard:
    """Card for an `autoPrintNote` tool call. Unknown types fall back to `fact`."""
    normalized_type = note_type.strip().lower() if isinstance(note_type, str) else "fact"
    type_key = normalized_type if normalized_type in _TITLE_BY_TYPE else "fact"
    body = content if SOURCE_MARKER in content else f"{content} {SOURCE_MARKER}"
    return KnowledgeCard(
        title=_TITLE_BY_TYPE[type_key],
        content=body,
        tags=list(_TAGS_BY_TYPE[type_key]),
    )


def _clean_tags(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for tag in value:
        if isinstance(tag, str) and tag.strip():
            out.append(tag)
        if len(out) >= MAX_TAGS:
            break
    return out


def build_knowledge_card_from_generated(
    raw: Any,
    fallback_text: str,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> KnowledgeCard:
    data = raw if isinstance(raw, dict) else {}
    title_candidate = data.get("title").strip() if isinstance(data.get("title"), str) else ""
    content_candidate = data.get("content").strip() if isinstance(data.get("content"), str) else ""

    title = title_candidate or DEFAULT_TITLE
    content = ensure_source_tag(content_candidate or (fallback_text or "").strip() or DEFAULT_CONTENT)
    tags = _clean_tags(data.get("tags"))
    return KnowledgeCard(
        title=title,
        content=_truncate(content, int(max_chars)),
        tags=tags or list(DEFAULT_TAGS),
    )


def card_from_delimited_payload(payload: Any) -> Optional[KnowledgeCard]:
    """Validate a card emitted inline between the knowledge-card markers."""
    if not isinstance(payload, dict):
        return None
    if payload.get("type") != CARD_TYPE:
        return None
    title = payload.get("title")
    content = payload.get("content")
    tags = payload.get("tags")
    if not title or not content or not isinstance(tags, list):
        return None
    return KnowledgeCard(
        title=str(title),
        content=str(content),
        tags=[str(t) for t in tags],
        source=payload.get("source") if isinstance(payload.get("source"), str) else None,
    )


def normalize_args_object(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None

    content = None
    for key in ("content", "text", "note", "value"):
        if raw.get(key) is not None:
            content = raw.get(key)
            break
    note_type = None
    for key in ("type", "category", "kind"):
        if raw.get(key) is not None:
            note_type = raw.get(key)
            break

    return {
        "content": str(content).strip() if content is not None else None,
        "type": note_type.strip() if isinstance(note_type, str) else None,
    }


def parse_function_args(raw: Any) -> Optional[dict]:
    """
    Normalize `autoPrintNote` arguments into {"content", "type"}.

    Arguments may arrive as an object, a JSON string, a string wrapping a JSON
    object, or loose `content=... , type=...` text. Order of attempts: full JSON,
    the `{...}` substring, key/value regex, then the whole string as content.
    """
    if raw is None:
        return None

    if not isinstance(raw, str):
        return normalize_args_object(raw)

    trimmed = raw.strip()
    if not trimmed:
        return None

    candidates = [trimmed]
    match = _JSON_OBJECT_RE.search(trimmed)
    if match and match.group(0) != trimmed:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        normalized = normalize_args_object(parsed)
        if normalized:
            return normalized

    content_match = _CONTENT_PAIR_RE.search(trimmed)
    if content_match:
        type_match = _TYPE_PAIR_RE.search(trimmed)
        return {
            "content": content_match.group(1).strip(),
            "type": type_match.group(1).strip() if type_match else None,
        }

    return {"content": trimmed, "type": None}


def has_print_keyword(text: Any, keywords: Iterable[str] = PRINT_KEYWORDS) -> bool:
    normalized = str(text or "").strip().lower()
    if not normalized:
        return False
    return any(str(k).lower() in normalized for k in keywords if str(k).strip())
