"""AI audit: one structured log line per model run.

Prompts and responses can contain receipt contents, so only their SHA-256
digests are logged unless ``AI_DEBUG_STORE_RAW=true``.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Optional

from huanale.core.config import get_settings

from .providers.base import ProviderResult

logger = logging.getLogger(__name__)


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def log_ai_run(
    *,
    scope: str,
    provider_result: ProviderResult,
    prompt_text: str,
    actor_id: Optional[str] = None,
    extra_meta: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Log one ingestion model run and return the logged fields."""
    entry: dict[str, Any] = {
        "scope": scope,
        "actor_id": actor_id,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_sha256": _digest(prompt_text),
        "response_sha256": _digest(provider_result.raw_text),
        **(extra_meta or {}),
    }
    if get_settings().ai_debug_store_raw:
        entry["prompt_raw"] = prompt_text
        entry["response_raw"] = provider_result.raw_text

    logger.info(
        "AI_RUN scope=%s provider=%s model=%s latency_ms=%s actor_id=%s",
        scope,
        entry["provider"],
        entry["model"],
        entry["latency_ms"],
        actor_id,
        extra={"ai_run": entry},
    )
    return entry
