"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Union

DeltaCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


async def emit_delta(on_delta: DeltaCallback, fragment: str) -> None:
    """Call *on_delta*, awaiting it when it is a coroutine function."""
    outcome = on_delta(fragment)
    if inspect.isawaitable(outcome):
        await outcome


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement.

    ``messages`` follow the chat format: a list of ``{"role", "content"}``
    dicts. ``image`` is either a ``data:`` URL carrying inline base64 bytes
    or an https URL the backend can fetch.
    """

    name: str = "base"

    @property
    @abc.abstractmethod
    def is_configured(self) -> bool:
        """True when the provider has the credentials it needs."""

    @abc.abstractmethod
    async def generate(
        self,
        messages: list[dict[str, str]],
        *,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2048,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        """Send *messages* and return a ``ProviderResult``."""

    @abc.abstractmethod
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
        """Send *prompt* with one image and return a ``ProviderResult``."""

    @abc.abstractmethod
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
        """Stream a vision completion.

        ``on_delta`` is invoked once per text fragment in arrival order; the
        returned ``ProviderResult`` carries the concatenated text.
        """
