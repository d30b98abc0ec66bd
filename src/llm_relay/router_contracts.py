from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .models import ModelRef

if TYPE_CHECKING:
    from .audit import RequestLog

ChunkHandler = Callable[[str], Awaitable[None] | None]


@dataclass(frozen=True)
class Message:
    role: str
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    model: ModelRef
    user_message: str
    system_message: str = ""
    fallback: tuple[ModelRef, ...] = ()
    history: tuple[Message, ...] = ()
    temperature: float | None = None
    top_p: float | None = None
    tags: dict[str, str] = field(default_factory=dict)

    def candidates(self) -> list[ModelRef]:
        return [self.model, *self.fallback]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model: str
    usage: Usage = field(default_factory=Usage)
    request_log: RequestLog | None = None
    thoughts: str = ""
