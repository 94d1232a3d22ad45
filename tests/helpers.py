from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def content_chunk(text: str) -> Dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


def reasoning_chunk(text: str, key: str = "reasoning") -> Dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {key: text}}]}


def usage_chunk(prompt_tokens: int, completion_tokens: int) -> Dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def scripted_transport(
    chunks: List[Dict[str, Any]],
    clock: Optional[FakeClock] = None,
    step_s: float = 0.0,
):
    """Replays `chunks`, advancing `clock` by `step_s` before each one."""

    async def transport(model: str, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        for chunk in chunks:
            if clock is not None:
                clock.advance(step_s)
            yield chunk

    return transport


def gated_transport(gate: asyncio.Event, chunks: Optional[List[Dict[str, Any]]] = None):
    """Blocks every attempt until `gate` is set, then replays `chunks`."""
    chunks = chunks if chunks is not None else [content_chunk("ok"), usage_chunk(1, 1)]

    async def transport(model: str, prompt: str) -> AsyncIterator[Dict[str, Any]]:
        await gate.wait()
        # keep looping workers from starving the event loop
        await asyncio.sleep(0)
        for chunk in chunks:
            yield chunk

    return transport


async def collect(agen) -> List[Any]:
    return [e async for e in agen]
