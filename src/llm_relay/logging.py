from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]

REDACTED = "[REDACTED]"

# Header and field names that carry vendor credentials.
_CREDENTIAL_FIELDS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "x-goog-api-key",
        "api_key",
        "apikey",
        "key",
        "secrets",
        "fernet_key",
    }
)
# Usage counters such as `prompt_tokens` do not match these.
_CREDENTIAL_SUFFIXES = ("_key", "apikey", "token", "secret", "password")

_TEXT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._-]{6,}"), f"Bearer {REDACTED}"),
    # Gemini passes the key as a query parameter.
    (re.compile(r"(?i)([?&]key=)[^&\s\"']+"), rf"\g<1>{REDACTED}"),
)


def _is_credential_field(name: Any) -> bool:
    lowered = str(name).lower()
    return lowered in _CREDENTIAL_FIELDS or lowered.endswith(_CREDENTIAL_SUFFIXES)


class SecretRedactor:
    """
    structlog processor that masks provider API keys before rendering.

    Known secrets are replaced wherever they appear in a string value; values
    under credential-looking field names are replaced outright.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        # longest first, so a secret containing another one is masked whole
        self._secrets = sorted({s for s in secrets if isinstance(s, str) and s}, key=len, reverse=True)

    def redact_text(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        for pattern, replacement in _TEXT_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def redact(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, Mapping):
            return {k: REDACTED if _is_credential_field(k) else self.redact(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.redact(v) for v in value)
        return value

    def __call__(self, _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], self.redact(event_dict))


def redact(value: Any, *, secrets: Iterable[str] = ()) -> Any:
    return SecretRedactor(secrets).redact(value)


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: Iterable[str] = ()) -> None:
    """Route structlog through stdlib levels; every renderer sees redacted events."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        SecretRedactor(secrets),
    ]
    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.format_exc_info))
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
