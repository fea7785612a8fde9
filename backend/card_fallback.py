import logging
from typing import Iterable, Optional

from backend.knowledge_cards import (
    DEFAULT_MAX_CHARS,
    FALLBACK_SOURCE,
    SOURCE_MARKER,
    KnowledgeCard,
    build_knowledge_card_from_generated,
)
from backend.llm import LLMClient, parse_json_object_best_effort
from backend.log_events import log_important

logger = logging.getLogger(__name__)


def _build_fallback_prompt(conversation_text: str) -> str:
    return f"""你是一位学习助手。请从以下实时对话中提取一个明确、具体的知识点，生成一张知识小票。

对话：
{conversation_text}

要求：
1. 只提取具体事实性知识点（概念/定义/公式/关键方法）
2. 一张卡片只包含一个概念
3. title 简短（<=20字）
4. content 简洁（<=200字），必须包含 “{SOURCE_MARKER}”
5. 输出 JSON，格式：
{{
  "title": "知识点标题",
  "content": "知识点内容... {SOURCE_MARKER}",
  "tags": ["标签1", "标签2"]
}}
只输出 JSON，不要额外文字。"""


def format_transcript_for_prompt(entries: Iterable) -> str:
    lines = []
    for entry in entries:
        label = "用户" if getattr(entry, "source", "") == "input" else "AI"
        lines.append(f"{label}: {getattr(entry, 'text', '')}")
    return "\n".join(lines)


class FallbackCardGenerator:
    """
    Produces exactly one card for a print intent that no tool call or inline
    card answered. Without an LLM client, or when generation fails, the card
    is synthesized locally from the triggering text.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient],
        *,
        history_entries: int = 12,
        max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self.llm_client = llm_client
        self.history_entries = int(history_entries)
        self.max_chars = int(max_chars)

    def local_card(self, fallback_text: str) -> KnowledgeCard:
        card = build_knowledge_card_from_generated(None, fallback_text, max_chars=self.max_chars)
        card.source = FALLBACK_SOURCE
        return card

    async def generate(self, session, fallback_text: str) -> KnowledgeCard:
        if self.llm_client is None:
            log_important("fallback.local", level=logging.WARNING, session=session.session_id, reason="no-api-key")
            return self.local_card(fallback_text)

        conversation_text = format_transcript_for_prompt(session.recent_transcript(self.history_entries))
        prompt = _build_fallback_prompt(conversation_text or fallback_text)
        try:
            text = await self.llm_client.complete_text(prompt)
        except Exception as e:
            logger.warning(f"[{session.session_id}] Fallback card generation failed: {e}")
            return self.local_card(fallback_text)

        parsed = parse_json_object_best_effort(text)
        if not parsed:
            logger.warning(f"[{session.session_id}] Fallback card response was not JSON: {str(text)[:200]}")
        card = build_knowledge_card_from_generated(parsed, fallback_text, max_chars=self.max_chars)
        card.source = FALLBACK_SOURCE
        return card
