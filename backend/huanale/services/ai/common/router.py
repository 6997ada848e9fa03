"""AI Router: resolves model and call limits for an ingestion scope."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from huanale.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

VISION_SCOPES = frozenset({"bill_scan"})


@dataclass(frozen=True)
class ResolvedConfig:
    """Model + limits used for one gateway call."""

    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float

    def call_kwargs(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout_seconds": self.timeout_seconds,
        }


def resolve(scope: str, settings: Optional[Settings] = None) -> ResolvedConfig:
    """Resolve the model for *scope*.

    ``bill_scan`` uses ``AI_VISION_MODEL``; every other scope uses
    ``AI_TEXT_MODEL``. An empty model lets the provider pick its default.
    """
    settings = settings or get_settings()
    model = settings.ai_vision_model if scope in VISION_SCOPES else settings.ai_text_model

    return ResolvedConfig(
        model=model.strip(),
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
