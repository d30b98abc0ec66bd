from __future__ import annotations

from .adapters import (
    AnthropicAdapter,
    GoogleAdapter,
    GrokAdapter,
    HTTPAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    PerplexityAdapter,
    ProviderAdapter,
)
from .audit import AuditEvent, RequestLog
from .config import RelayConfig
from .decoder import StreamEvent, decode_stream
from .errors import (
    AuthenticationError,
    BadRequestError,
    ChunkHandlerError,
    ConfigurationError,
    MaxRetriesExceededError,
    NoAvailableKeysError,
    NoChunkHandlerError,
    RateLimitError,
    RelayError,
    StreamStalledError,
    UnsupportedProviderError,
    UpstreamProtocolError,
    UpstreamServerError,
    UpstreamStatusError,
    UpstreamTransportError,
)
from .keys import APIKey, KeyPool
from .models import (
    AnthropicModel,
    GoogleModel,
    GrokModel,
    ModelRef,
    OpenAIModel,
    OpenRouterModel,
    PerplexityModel,
)
from .retry import BackoffPolicy, is_retryable, is_retryable_status, retry_with_backoff
from .router import Router, create_router
from .router_contracts import CompletionRequest, CompletionResult, Message, Usage

__all__ = [
    "APIKey",
    "AnthropicAdapter",
    "AnthropicModel",
    "AuditEvent",
    "AuthenticationError",
    "BackoffPolicy",
    "BadRequestError",
    "ChunkHandlerError",
    "CompletionRequest",
    "CompletionResult",
    "ConfigurationError",
    "GoogleAdapter",
    "GoogleModel",
    "GrokAdapter",
    "GrokModel",
    "HTTPAdapter",
    "KeyPool",
    "MaxRetriesExceededError",
    "Message",
    "ModelRef",
    "NoAvailableKeysError",
    "NoChunkHandlerError",
    "OpenAIAdapter",
    "OpenAIModel",
    "OpenRouterAdapter",
    "OpenRouterModel",
    "PerplexityAdapter",
    "PerplexityModel",
    "ProviderAdapter",
    "RateLimitError",
    "RelayConfig",
    "RelayError",
    "RequestLog",
    "Router",
    "StreamEvent",
    "StreamStalledError",
    "UnsupportedProviderError",
    "UpstreamProtocolError",
    "UpstreamServerError",
    "UpstreamStatusError",
    "UpstreamTransportError",
    "Usage",
    "create_router",
    "decode_stream",
    "is_retryable",
    "is_retryable_status",
    "retry_with_backoff",
]
