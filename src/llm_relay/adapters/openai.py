from __future__ import annotations

from typing import Any

from ..decoder import StreamEvent, load_object
from ..errors import ConfigurationError
from ..models import GROK, OPENAI, OPENROUTER, PERPLEXITY, ModelRef
from ..router_contracts import CompletionRequest, Usage
from .base import HTTPAdapter, UpstreamCall

_ROLE_MAP = {"user": "user", "assistant": "assistant", "model": "assistant", "system": "system"}


def chat_messages(request: CompletionRequest) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if request.system_message:
        messages.append({"role": "system", "content": request.system_message})
    for msg in request.history:
        role = _ROLE_MAP.get(msg.role)
        if role is None:
            raise ConfigurationError(f"Unsupported message role: {msg.role!r}")
        messages.append({"role": role, "content": msg.content})
    messages.append({"role": "user", "content": request.user_message})
    return messages


def parse_chat_chunk(line: str) -> StreamEvent | None:
    chunk = load_object(line)

    delta: str | None = None
    choices = chunk.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if not isinstance(choice, dict):
            raise ValueError(f"choice is not an object: {choice!r}")
        content = (choice.get("delta") or {}).get("content")
        if isinstance(content, str):
            delta = content

    usage: Usage | None = None
    raw_usage = chunk.get("usage")
    if isinstance(raw_usage, dict) and raw_usage.get("total_tokens"):
        usage = Usage(
            prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
            completion_tokens=int(raw_usage.get("completion_tokens") or 0),
            total_tokens=int(raw_usage["total_tokens"]),
        )
    return StreamEvent(delta=delta, usage=usage)


class OpenAIAdapter(HTTPAdapter):
    """OpenAI chat/completions wire format; also the base for compatible vendors."""

    name = OPENAI
    default_base_url = "https://api.openai.com/v1"
    include_usage_option = True

    def build_body(self, request: CompletionRequest, model: ModelRef) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model.name,
            "messages": chat_messages(request),
            "stream": True,
        }
        if self.include_usage_option:
            body["stream_options"] = {"include_usage": True}
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        schema = getattr(model, "structured_output", None)
        if schema:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "structured_output", "schema": schema, "strict": True},
            }
        return body

    def build_request(self, request: CompletionRequest, model: ModelRef, key: str) -> UpstreamCall:
        return UpstreamCall(
            url=f"{self.base_url}/chat/completions",
            body=self.build_body(request, model),
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
        )

    def parse_line(self, line: str) -> StreamEvent | None:
        return parse_chat_chunk(line)


class GrokAdapter(OpenAIAdapter):
    name = GROK
    default_base_url = "https://api.x.ai/v1"


class PerplexityAdapter(OpenAIAdapter):
    name = PERPLEXITY
    default_base_url = "https://api.perplexity.ai"
    # usage is sent on every chunk without asking
    include_usage_option = False


class OpenRouterAdapter(OpenAIAdapter):
    name = OPENROUTER
    default_base_url = "https://openrouter.ai/api/v1"
