from __future__ import annotations

from typing import Any

from ..decoder import LineParser, StreamEvent, load_object
from ..errors import ConfigurationError
from ..models import ANTHROPIC, ModelRef
from ..router_contracts import CompletionRequest, Usage
from .base import HTTPAdapter, UpstreamCall

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class AnthropicAdapter(HTTPAdapter):
    name = ANTHROPIC
    default_base_url = "https://api.anthropic.com/v1"

    def build_request(self, request: CompletionRequest, model: ModelRef, key: str) -> UpstreamCall:
        messages: list[dict[str, Any]] = []
        for msg in request.history:
            if msg.role == "user":
                role = "user"
            elif msg.role in ("assistant", "model"):
                role = "assistant"
            else:
                raise ConfigurationError(f"Unsupported message role: {msg.role!r}")
            messages.append({"role": role, "content": msg.content})
        messages.append({"role": "user", "content": request.user_message})

        body: dict[str, Any] = {
            "model": model.name,
            "messages": messages,
            "stream": True,
            "max_tokens": getattr(model, "max_tokens", DEFAULT_MAX_TOKENS),
        }
        if request.system_message:
            body["system"] = request.system_message
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p

        return UpstreamCall(
            url=f"{self.base_url}/messages",
            body=body,
            headers={
                "x-api-key": key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
        )

    def line_parser(self) -> LineParser:
        # input tokens arrive on message_start, output tokens on message_delta
        counts = {"input": 0, "output": 0}

        def parse(line: str) -> StreamEvent | None:
            event = load_object(line)
            kind = event.get("type")
            if kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta":
                    return StreamEvent(delta=delta.get("text"))
                if delta.get("type") == "thinking_delta":
                    return StreamEvent(delta=delta.get("thinking"), thought=True)
                return None
            if kind == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                counts["input"] = int(usage.get("input_tokens") or 0)
                counts["output"] = int(usage.get("output_tokens") or 0)
            elif kind == "message_delta":
                usage = event.get("usage") or {}
                counts["input"] = int(usage.get("input_tokens") or counts["input"])
                counts["output"] = int(usage.get("output_tokens") or counts["output"])
            else:
                return None
            return StreamEvent(
                usage=Usage(
                    prompt_tokens=counts["input"],
                    completion_tokens=counts["output"],
                    total_tokens=counts["input"] + counts["output"],
                )
            )

        return parse

    def parse_line(self, line: str) -> StreamEvent | None:
        return self.line_parser()(line)
