from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

OPENAI = "openai"
ANTHROPIC = "anthropic"
GOOGLE = "google"
GROK = "grok"
PERPLEXITY = "perplexity"
OPENROUTER = "openrouter"


@dataclass(frozen=True)
class ModelRef:
    """
    A model the router can dispatch to.

    The router only reads `provider` and `name`. Vendor-specific fields on the
    subclasses are consumed by the matching adapter.
    """

    name: str
    provider: ClassVar[str] = ""


@dataclass(frozen=True)
class OpenAIModel(ModelRef):
    provider: ClassVar[str] = OPENAI
    structured_output: dict[str, Any] | None = None


@dataclass(frozen=True)
class AnthropicModel(ModelRef):
    provider: ClassVar[str] = ANTHROPIC
    max_tokens: int = 4096


@dataclass(frozen=True)
class GoogleModel(ModelRef):
    provider: ClassVar[str] = GOOGLE
    thinking_budget: int | None = None


@dataclass(frozen=True)
class GrokModel(ModelRef):
    provider: ClassVar[str] = GROK


@dataclass(frozen=True)
class PerplexityModel(ModelRef):
    provider: ClassVar[str] = PERPLEXITY


@dataclass(frozen=True)
class OpenRouterModel(ModelRef):
    provider: ClassVar[str] = OPENROUTER
    structured_output: dict[str, Any] | None = None
