from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Stage = Literal["dispatch", "adapter", "retry", "stream"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    timestamp: datetime
    description: str
    stage: Stage = "dispatch"


@dataclass
class RequestLog:
    """
    Append-only trail of everything that happened during one logical call.

    Created before the first attempt and handed by reference to every layer
    (router, adapter, retry engine, stream decoder). Only the task driving
    the call appends to it.
    """

    system_msg: str = ""
    user_msg: str = ""
    start: datetime = field(default_factory=_now)
    end: datetime | None = None
    completed: bool = False
    model: str | None = None
    response: str = ""
    events: list[AuditEvent] = field(default_factory=list)

    def add(self, description: str, stage: Stage = "dispatch") -> AuditEvent:
        event = AuditEvent(timestamp=_now(), description=description, stage=stage)
        self.events.append(event)
        return event

    def events_for(self, stage: Stage) -> list[AuditEvent]:
        return [e for e in self.events if e.stage == stage]

    def close(self, *, completed: bool, response: str | None = None, model: str | None = None) -> None:
        self.completed = completed
        if response is not None:
            self.response = response
        if model is not None:
            self.model = model
        self.end = _now()

    @property
    def duration_seconds(self) -> float | None:
        if self.end is None:
            return None
        return (self.end - self.start).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "model": self.model,
            "system_msg": self.system_msg,
            "user_msg": self.user_msg,
            "response": self.response,
            "events": [
                {"timestamp": e.timestamp.isoformat(), "stage": e.stage, "description": e.description}
                for e in self.events
            ],
        }
