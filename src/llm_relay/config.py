from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .models import ANTHROPIC, GOOGLE, GROK, OPENAI, OPENROUTER, PERPLEXITY
from .retry import BackoffPolicy


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _optional_int(value: str | None) -> int | None:
    return int(value) if value else None


class RelayConfig(BaseModel):
    # Provider keys (comma separated, tried in order)
    openai_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("OPENAI_API_KEYS")))
    anthropic_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ANTHROPIC_API_KEYS")))
    google_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("GOOGLE_API_KEYS")))
    grok_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("GROK_API_KEYS")))
    perplexity_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("PERPLEXITY_API_KEYS")))
    openrouter_api_keys: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("OPENROUTER_API_KEYS")))

    # Per-key quota
    key_max_requests: int | None = Field(default_factory=lambda: _optional_int(os.getenv("KEY_MAX_REQUESTS")))
    key_quota_period_seconds: float = Field(
        default_factory=lambda: float(os.getenv("KEY_QUOTA_PERIOD_SECONDS", "3600"))
    )

    # Encrypted key file
    keys_path: str | None = Field(default_factory=lambda: os.getenv("KEYS_PATH"))
    keys_fernet_key: str | None = Field(default_factory=lambda: os.getenv("KEYS_FERNET_KEY"))

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # HTTP behavior
    http_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("HTTP_TIMEOUT_SECONDS", "60")))
    retry_max_attempts: int = Field(default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "5")))
    retry_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_INITIAL_SECONDS", "0.1"))
    )
    retry_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "10.0"))
    )
    retry_jitter: float = Field(default_factory=lambda: float(os.getenv("RETRY_JITTER", "0.2")))
    stream_stall_seconds: float = Field(default_factory=lambda: float(os.getenv("STREAM_STALL_SECONDS", "3.0")))

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.retry_max_attempts,
            initial_seconds=self.retry_backoff_initial_seconds,
            max_seconds=max(self.retry_backoff_initial_seconds, self.retry_backoff_max_seconds),
            jitter=self.retry_jitter,
        )

    def require_fernet_key(self) -> str:
        if not self.keys_fernet_key:
            raise ValueError("KEYS_FERNET_KEY is required for encrypted key storage.")
        return self.keys_fernet_key

    def provider_keys(self) -> dict[str, list[str]]:
        """Env keys per provider, followed by any keys from the encrypted key file."""
        merged: dict[str, list[str]] = {
            OPENAI: list(self.openai_api_keys),
            ANTHROPIC: list(self.anthropic_api_keys),
            GOOGLE: list(self.google_api_keys),
            GROK: list(self.grok_api_keys),
            PERPLEXITY: list(self.perplexity_api_keys),
            OPENROUTER: list(self.openrouter_api_keys),
        }
        if self.keys_path:
            from .key_store import EncryptedKeyStore

            store = EncryptedKeyStore(self.keys_path, self.require_fernet_key())
            if store.exists():
                for provider, secrets in store.load().providers.items():
                    bucket = merged.setdefault(provider, [])
                    bucket.extend(s for s in secrets if s not in bucket)
        return {provider: keys for provider, keys in merged.items() if keys}

    def all_secrets(self) -> list[str]:
        secrets = [s for keys in self.provider_keys().values() for s in keys]
        if self.keys_fernet_key:
            secrets.append(self.keys_fernet_key)
        return secrets
