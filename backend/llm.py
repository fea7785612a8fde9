import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_TEXT_MODEL = "gemini-2.0-flash"


@dataclass
class LLMEndpoint:
    provider: str
    base_url: str
    model: str
    api_key: str = field(repr=False)
    headers: dict = field(default_factory=dict)
    client: Any = field(default=None, repr=False)

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.base_url, self.model, self.api_key)


def _endpoint_from_route(route: Any) -> Optional[LLMEndpoint]:
    if not isinstance(route, dict):
        return None
    api_key = str(route.get("api_key") or "").strip()
    base_url = str(route.get("base_url") or "").strip()
    model = str(route.get("model") or "").strip()
    if not (api_key and base_url and model):
        return None
    headers = route.get("api_extra_headers", route.get("default_headers"))
    headers = dict(headers) if isinstance(headers, dict) else {}
    return LLMEndpoint(
        provider=str(route.get("provider") or "custom").strip().lower() or "custom",
        base_url=base_url,
        model=model,
        api_key=api_key,
        headers=headers,
        client=AsyncOpenAI(api_key=api_key, base_url=base_url, default_headers=headers),
    )


class LLMClient:
    """
    Non-streaming text generation over OpenAI-compatible endpoints, tried in
    order. Used only for knowledge-card fallback summaries; the live
    conversation itself runs over the upstream WebSocket.
    """

    def __init__(
        self,
        api_key,
        base_url=GEMINI_OPENAI_BASE_URL,
        model=DEFAULT_TEXT_MODEL,
        default_headers=None,
        *,
        fallback_routes=None,
        failover_enabled: bool = True,
    ):
        self.failover_enabled = bool(failover_enabled)
        primary = {
            "provider": "gemini",
            "api_key": api_key,
            "base_url": base_url,
            "model": model,
            "api_extra_headers": default_headers,
        }
        self.endpoints: list[LLMEndpoint] = []
        seen: set[tuple[str, str, str]] = set()
        for route in [primary, *(fallback_routes or [])]:
            ep = _endpoint_from_route(route)
            if ep is None or ep.identity in seen:
                continue
            seen.add(ep.identity)
            self.endpoints.append(ep)

        if not self.endpoints:
            raise ValueError("LLMClient requires at least one endpoint with an API key.")
        self.active = self.endpoints[0]

    @property
    def model(self) -> str:
        return self.active.model

    @property
    def base_url(self) -> str:
        return self.active.base_url

    async def chat_create(self, **kwargs):
        candidates = self.endpoints if self.failover_enabled else self.endpoints[:1]
        failures: list[str] = []
        for position, ep in enumerate(candidates, start=1):
            try:
                resp = await ep.client.chat.completions.create(**{**kwargs, "model": ep.model})
            except Exception as e:
                failures.append(f"#{position} {ep.provider} {ep.base_url} ({ep.model}): {e}")
                if position < len(candidates):
                    logger.warning(f"LLM endpoint #{position} ({ep.provider}) failed, trying next: {e}")
                continue
            if ep is not self.active:
                logger.warning(f"LLM failover now using endpoint #{position} ({ep.provider} {ep.base_url})")
                self.active = ep
            return resp
        raise RuntimeError("All configured LLM APIs failed. " + " | ".join(failures))

    async def complete_text(self, prompt: str, *, system_prompt: str | None = None) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        response = await self.chat_create(messages=messages, stream=False)
        return extract_chat_content_best_effort(response)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_chat_content_best_effort(response_obj: Any) -> str:
    """Text of the first choice; list-of-parts content is joined line by line."""
    choices = _field(response_obj, "choices")
    if not isinstance(choices, list) or not choices:
        return ""
    content = _field(_field(choices[0], "message"), "content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = []
    for item in content:
        text = item if isinstance(item, str) else _field(item, "text") if isinstance(item, dict) else None
        if isinstance(text, str) and text.strip():
            texts.append(text)
    return "\n".join(texts).strip()


def parse_json_object_best_effort(value: Any) -> dict:
    if isinstance(value, dict):
        return value
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        return {}

    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    return {}
