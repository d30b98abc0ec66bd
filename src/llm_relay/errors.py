from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .audit import RequestLog


class RelayError(Exception):
    """Base error for relay failures."""

    request_log: RequestLog | None = None


class ConfigurationError(RelayError):
    pass


class NoChunkHandlerError(ConfigurationError):
    def __init__(self, message: str = "a chunk handler must be provided to stream response"):
        super().__init__(message)


class UnsupportedProviderError(ConfigurationError):
    pass


class NoAvailableKeysError(RelayError):
    def __init__(self, provider: str):
        super().__init__(f"no available API keys for provider {provider!r}")
        self.provider = provider


class UpstreamStatusError(RelayError):
    """Upstream answered with a non-200 status."""

    def __init__(self, status_code: int, body: str = "", message: str | None = None):
        super().__init__(message or f"received non-200 status code ({status_code})")
        self.status_code = status_code
        self.body = body


class AuthenticationError(UpstreamStatusError):
    pass


class RateLimitError(UpstreamStatusError):
    def __init__(self, retry_after_seconds: int | None = None, body: str = "", message: str = "Rate limited"):
        super().__init__(429, body, message)
        self.retry_after_seconds = retry_after_seconds


class BadRequestError(UpstreamStatusError):
    pass


class UpstreamServerError(UpstreamStatusError):
    pass


class UpstreamTransportError(RelayError):
    """Connection-level failure before a status was received."""


class UpstreamProtocolError(RelayError):
    """Unexpected upstream response shape / contract mismatch."""


class StreamStalledError(RelayError):
    def __init__(self, grace_seconds: float):
        super().__init__(f"no stream data received within {grace_seconds:g}s")
        self.grace_seconds = grace_seconds


class MaxRetriesExceededError(RelayError):
    def __init__(self, last_error: BaseException | None, attempts: int):
        super().__init__(f"max retries exceeded after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class ChunkHandlerError(RelayError):
    """The caller's chunk callback raised; the stream was aborted."""
