"""Qwen provider (DashScope OpenAI-compatible endpoint)."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from ..errors import EmptyResponse, ServiceNotConfigured, UpstreamRequestFailed
from .base import BaseProvider, DeltaCallback, ProviderResult, emit_delta
from .sse import iter_sse_data

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "qwen3.5-flash"
DEFAULT_VISION_MODEL = "qwen3.5-plus"


def _vision_messages(prompt: str, image: str) -> list[dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": image}},
                {"type": "text", "text": prompt},
            ],
        }
    ]


class QwenProvider(BaseProvider):
    name = "qwen"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://dashscope.aliyuncs.com/compatible-mode/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _client(self, timeout_seconds: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> ProviderResult:
        if not self.is_configured:
            raise ServiceNotConfigured("DASHSCOPE_API_KEY is not set")

        t0 = time.monotonic()
        async with self._client(timeout_seconds) as client:
            resp = await client.post(
                self._url,
                headers=self._headers(),
                json={
                    "model": model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
            )
            if resp.status_code >= 400:
                raise UpstreamRequestFailed(resp.status_code, resp.text[:500])
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        if not isinstance(text, str) or not text.strip():
            raise EmptyResponse(f"{self.name} returned no text")
        usage = data.get("usage") or {}

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
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
        return await self._complete(
            messages,
            model=model or DEFAULT_TEXT_MODEL,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

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
        return await self._complete(
            _vision_messages(prompt, image),
            model=model or DEFAULT_VISION_MODEL,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )

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
        if not self.is_configured:
            raise ServiceNotConfigured("DASHSCOPE_API_KEY is not set")

        model = model or DEFAULT_VISION_MODEL
        t0 = time.monotonic()
        fragments: list[str] = []
        usage: dict[str, Any] = {}

        async with self._client(timeout_seconds) as client:
            async with client.stream(
                "POST",
                self._url,
                headers=self._headers(),
                json={
                    "model": model,
                    "messages": _vision_messages(prompt, image),
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "stream": True,
                    "stream_options": {"include_usage": True},
                },
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise UpstreamRequestFailed(resp.status_code, body[:500])

                async for event in iter_sse_data(resp.aiter_lines()):
                    if event.get("usage"):
                        usage = event["usage"]
                    choices = event.get("choices") or []
                    if not choices:
                        continue
                    fragment = (choices[0].get("delta") or {}).get("content")
                    if isinstance(fragment, str) and fragment:
                        fragments.append(fragment)
                        await emit_delta(on_delta, fragment)

        text = "".join(fragments)
        if not text.strip():
            raise EmptyResponse(f"{self.name} stream produced no text")
        elapsed = (time.monotonic() - t0) * 1000

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
