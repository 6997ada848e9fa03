"""Google Gemini provider."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from ..errors import EmptyResponse, ServiceNotConfigured, UpstreamRequestFailed
from .base import BaseProvider, DeltaCallback, ProviderResult, emit_delta
from .sse import iter_sse_data

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"


def image_part(image: str) -> dict[str, Any]:
    """Convert a ``data:`` URL or remote URL into a Gemini content part."""
    if image.startswith("data:"):
        header, _, data = image.partition(",")
        mime_type = header[len("data:"):].split(";", 1)[0] or "image/jpeg"
        return {"inline_data": {"mime_type": mime_type, "data": data}}
    return {"file_data": {"mime_type": "image/jpeg", "file_uri": image}}


def _text_of(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiProvider(BaseProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self._api_key}

    def _body(
        self,
        contents: list[dict[str, Any]],
        *,
        system_text: str,
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}
        return body

    async def _complete(
        self,
        contents: list[dict[str, Any]],
        *,
        system_text: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> ProviderResult:
        if not self.is_configured:
            raise ServiceNotConfigured("GEMINI_API_KEY is not set")

        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            resp = await client.post(
                f"{self._base_url}/models/{model}:generateContent",
                headers=self._headers(),
                json=self._body(
                    contents,
                    system_text=system_text,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
            )
            if resp.status_code >= 400:
                raise UpstreamRequestFailed(resp.status_code, resp.text[:500])
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = _text_of(data)
        if not text.strip():
            raise EmptyResponse(f"{self.name} returned no text")
        usage = data.get("usageMetadata") or {}

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
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
        system_text = "\n".join(m["content"] for m in messages if m.get("role") == "system")
        user_parts = [{"text": m["content"]} for m in messages if m.get("role") != "system"]
        return await self._complete(
            [{"role": "user", "parts": user_parts}],
            system_text=system_text,
            model=model or DEFAULT_MODEL,
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
            [{"role": "user", "parts": [{"text": prompt}, image_part(image)]}],
            system_text="",
            model=model or DEFAULT_MODEL,
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
            raise ServiceNotConfigured("GEMINI_API_KEY is not set")

        model = model or DEFAULT_MODEL
        t0 = time.monotonic()
        fragments: list[str] = []
        usage: dict[str, Any] = {}
        body = self._body(
            [{"role": "user", "parts": [{"text": prompt}, image_part(image)]}],
            system_text="",
            temperature=temperature,
            max_tokens=max_tokens,
        )

        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            async with client.stream(
                "POST",
                f"{self._base_url}/models/{model}:streamGenerateContent",
                params={"alt": "sse"},
                headers=self._headers(),
                json=body,
            ) as resp:
                if resp.status_code >= 400:
                    raw = (await resp.aread()).decode("utf-8", errors="replace")
                    raise UpstreamRequestFailed(resp.status_code, raw[:500])

                async for event in iter_sse_data(resp.aiter_lines()):
                    usage = event.get("usageMetadata") or usage
                    fragment = _text_of(event)
                    if fragment:
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
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
            latency_ms=round(elapsed, 2),
        )
