from __future__ import annotations

from .anthropic import AnthropicAdapter
from .base import HTTPAdapter, ProviderAdapter, UpstreamCall, error_for_status
from .google import GoogleAdapter
from .openai import GrokAdapter, OpenAIAdapter, OpenRouterAdapter, PerplexityAdapter

ADAPTER_CLASSES: dict[str, type[HTTPAdapter]] = {
    cls.name: cls
    for cls in (OpenAIAdapter, AnthropicAdapter, GoogleAdapter, GrokAdapter, PerplexityAdapter, OpenRouterAdapter)
}

__all__ = [
    "ADAPTER_CLASSES",
    "AnthropicAdapter",
    "GoogleAdapter",
    "GrokAdapter",
    "HTTPAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "PerplexityAdapter",
    "ProviderAdapter",
    "UpstreamCall",
    "error_for_status",
]
