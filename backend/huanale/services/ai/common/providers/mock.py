"""Mock provider: deterministic responses for tests and local development."""

from __future__ import annotations

import time
from typing import Optional

from ..errors import EmptyResponse
from .base import BaseProvider, DeltaCallback, ProviderResult, emit_delta

DEFAULT_RESPONSE = (
    '{"transactions": [{"title": "Mock Purchase", "amount": 1.0, '
    '"currency": "¥", "category": "Other", "type": "expense"}]}'
)


class MockProvider(BaseProvider):
    name = "mock"

    def __init__(
        self,
        response_text: str = DEFAULT_RESPONSE,
        *,
        chunk_size: int = 16,
        error: Optional[Exception] = None,
    ) -> None:
        self.response_text = response_text
        self.chunk_size = max(1, chunk_size)
        self.error = error
        self.calls: list[dict] = []

    @property
    def is_configured(self) -> bool:
        return True

    def _result(self, prompt_words: int, model: str, t0: float) -> ProviderResult:
        if self.error is not None:
            raise self.error
        if not self.response_text.strip():
            raise EmptyResponse("mock returned no text")
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=self.response_text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=prompt_words,
            completion_tokens=len(self.response_text.split()),
            latency_ms=round(elapsed, 2),
        )

    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        self.calls.append({"kind": "text", "messages": messages, "model": model})
        words = sum(len(m.get("content", "").split()) for m in messages)
        return self._result(words, model, t0)

    async def generate_vision(
        self,
        prompt: str,
        image: str,
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        self.calls.append({"kind": "vision", "prompt": prompt, "image": image, "model": model})
        return self._result(len(prompt.split()), model, t0)

    async def generate_vision_stream(
        self,
        prompt: str,
        image: str,
        on_delta: DeltaCallback,
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        self.calls.append({"kind": "vision_stream", "prompt": prompt, "image": image, "model": model})
        if self.error is not None:
            raise self.error
        text = self.response_text
        for start in range(0, len(text), self.chunk_size):
            await emit_delta(on_delta, text[start : start + self.chunk_size])
        return self._result(len(prompt.split()), model, t0)
