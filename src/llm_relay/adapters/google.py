from __future__ import annotations

from typing import Any

from ..decoder import StreamEvent, load_object
from ..errors import ConfigurationError
from ..models import GOOGLE, ModelRef
from ..router_contracts import CompletionRequest, Usage
from .base import HTTPAdapter, UpstreamCall

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


class GoogleAdapter(HTTPAdapter):
    name = GOOGLE
    default_base_url = GEMINI_DEV_API_BASE

    def build_request(self, request: CompletionRequest, model: ModelRef, key: str) -> UpstreamCall:
        contents: list[dict[str, Any]] = []
        for msg in request.history:
            if msg.role == "user":
                gemini_role = "user"
            elif msg.role in ("assistant", "model"):
                gemini_role = "model"
            else:
                raise ConfigurationError(f"Unsupported message role for upstream: {msg.role!r}")
            contents.append({"role": gemini_role, "parts": [{"text": msg.content}]})
        contents.append({"role": "user", "parts": [{"text": request.user_message}]})

        payload: dict[str, Any] = {"contents": contents}
        if request.system_message:
            payload["systemInstruction"] = {"parts": [{"text": request.system_message}]}

        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.top_p is not None:
            generation_config["topP"] = request.top_p
        thinking_budget = getattr(model, "thinking_budget", None)
        if thinking_budget is not None:
            generation_config["thinkingConfig"] = {
                "thinkingBudget": thinking_budget,
                "includeThoughts": thinking_budget != 0,
            }
        if generation_config:
            payload["generationConfig"] = generation_config

        return UpstreamCall(
            url=f"{self.base_url}/models/{model.name}:streamGenerateContent",
            body=payload,
            params={"alt": "sse", "key": key},
            headers={"Content-Type": "application/json"},
        )

    def parse_line(self, line: str) -> StreamEvent | None:
        event = load_object(line)

        usage: Usage | None = None
        meta = event.get("usageMetadata")
        if isinstance(meta, dict) and meta.get("totalTokenCount"):
            usage = Usage(
                prompt_tokens=int(meta.get("promptTokenCount") or 0),
                completion_tokens=int(meta.get("candidatesTokenCount") or 0),
                total_tokens=int(meta["totalTokenCount"]),
            )

        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return StreamEvent(usage=usage) if usage else None
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise ValueError(f"candidate is not an object: {candidate!r}")
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts:
            return StreamEvent(usage=usage) if usage else None

        if not all(isinstance(p, dict) for p in parts):
            raise ValueError(f"content parts must be objects: {parts!r}")
        text = "".join(p["text"] for p in parts if isinstance(p.get("text"), str) and not p.get("thought"))
        if text:
            return StreamEvent(delta=text, usage=usage)
        thought = "".join(p["text"] for p in parts if isinstance(p.get("text"), str) and p.get("thought"))
        return StreamEvent(delta=thought or None, usage=usage, thought=bool(thought))
