from __future__ import annotations

import json

import pytest


def _sse_body(*payloads: object, done: bool = True) -> str:
    lines = []
    for p in payloads:
        lines.append(f"data: {p if isinstance(p, str) else json.dumps(p)}")
        lines.append("")
    if done:
        lines.append("data: [DONE]")
        lines.append("")
    return "\n".join(lines)


@pytest.fixture
def sse_body():
    return _sse_body


@pytest.fixture
def no_sleep():
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
