"""Provider factory: builds the model gateway named in settings."""

from __future__ import annotations

import logging
from typing import Optional

from huanale.core.config import Settings, get_settings

from .base import BaseProvider, DeltaCallback, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "DeltaCallback", "ProviderResult", "MockProvider"]

DEFAULT_PROVIDER = "qwen"


def get_provider(provider_name: str = "", settings: Optional[Settings] = None) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    Unknown or non-allowlisted names fall back to the default provider. A
    provider without an API key is still returned; its ``is_configured``
    is False and every call raises ``ServiceNotConfigured``.
    """
    settings = settings or get_settings()
    name = (provider_name or settings.ai_provider).lower().strip()

    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r not in allowlist - falling back to %s", name, DEFAULT_PROVIDER)
        name = DEFAULT_PROVIDER

    if name == "mock":
        return MockProvider()

    if name == "gemini":
        from .gemini import GeminiProvider

        if not settings.gemini_api_key:
            logger.warning("GEMINI_API_KEY not set - AI ingestion is disabled")
        return GeminiProvider(api_key=settings.gemini_api_key, base_url=settings.gemini_base_url)

    if name != DEFAULT_PROVIDER:
        logger.warning("Unknown provider %r - falling back to %s", name, DEFAULT_PROVIDER)

    from .qwen import QwenProvider

    if not settings.dashscope_api_key:
        logger.warning("DASHSCOPE_API_KEY not set - AI ingestion is disabled")
    return QwenProvider(api_key=settings.dashscope_api_key, base_url=settings.dashscope_base_url)
