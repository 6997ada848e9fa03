"""Ingestion entry points for text, voice and bill-image input.

Each entry point validates its one input field, checks the model gateway is
configured, asks the model for ``{"transactions": [...]}`` and hands the
items to the ``SessionOrchestrator``. Failures surface as ``IngestionError``
subclasses; diagnostic detail is logged, never returned.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Optional

import httpx

from huanale.core.config import Settings, get_settings
from huanale.core.image_processing import prepare_bill_image
from huanale.core.storage import BillStorage, StorageAccessDenied, StorageError
from huanale.services.ai.common.audit import log_ai_run
from huanale.services.ai.common.errors import AIError, JsonParseFailed, ServiceNotConfigured
from huanale.services.ai.common.json_tools import items_from_payload, parse_complete
from huanale.services.ai.common.providers import BaseProvider, ProviderResult
from huanale.services.ai.common.router import resolve

from .contracts import Source
from .errors import AIServiceNotConfigured, AIServiceUnavailable, InvalidInput, NoDataExtracted
from .normalizer import coerce_amount, has_valid_amount
from .orchestrator import SessionOrchestrator
from .prompts import BILL_PROMPT, text_messages, voice_messages

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (AIError, httpx.HTTPError, ValueError)


def _require(value: Optional[str], field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidInput(f"{field} is required")
    return cleaned


def _ensure_configured(gateway: BaseProvider) -> None:
    if not gateway.is_configured:
        raise AIServiceNotConfigured()


async def _call_gateway(
    call: Callable[[], Awaitable[ProviderResult]],
    *,
    scope: Source,
    prompt_text: str,
    actor_id: str,
) -> tuple[Any, list[Any]]:
    """Run one model call and return ``(parsed_payload, raw_items)``."""
    try:
        result = await call()
    except ServiceNotConfigured as exc:
        raise AIServiceNotConfigured() from exc
    except GATEWAY_ERRORS as exc:
        logger.error("AI %s call failed for user %s: %s", scope, actor_id, exc)
        raise AIServiceUnavailable() from exc

    log_ai_run(scope=scope, provider_result=result, prompt_text=prompt_text, actor_id=actor_id)

    try:
        parsed = parse_complete(result.raw_text)
    except JsonParseFailed as exc:
        logger.warning("AI %s output unparseable for user %s: %s", scope, actor_id, result.raw_text[:200])
        raise AIServiceUnavailable() from exc
    return parsed, items_from_payload(parsed)


async def _ingest_messages(
    source: Source,
    raw_input: str,
    messages: list[dict[str, str]],
    *,
    gateway: BaseProvider,
    orchestrator: SessionOrchestrator,
    settings: Settings,
) -> dict[str, Any]:
    config = resolve(source, settings)
    parsed, raw_items = await _call_gateway(
        lambda: gateway.generate(messages, **config.call_kwargs()),
        scope=source,
        prompt_text="\n".join(m["content"] for m in messages),
        actor_id=orchestrator.user_id,
    )
    if not raw_items:
        raise NoDataExtracted()

    session, rows = orchestrator.build_batch(source, raw_input, raw_items, ai_raw_output=parsed)
    if settings.ingest_background_persist:
        orchestrator.dispatch_batch(session, rows)
        return {"session_id": session["id"], "transactions": rows}

    inserted = await orchestrator.persist_batch(session, rows)
    return {"session_id": session["id"], "transactions": inserted}


async def process_text(
    text: Optional[str],
    *,
    gateway: BaseProvider,
    orchestrator: SessionOrchestrator,
    settings: Optional[Settings] = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    cleaned = _require(text, "Text")
    if len(cleaned) > settings.text_input_max_length:
        raise InvalidInput(f"Text is too long (max {settings.text_input_max_length} characters)")
    _ensure_configured(gateway)
    return await _ingest_messages(
        "text",
        cleaned,
        text_messages(cleaned),
        gateway=gateway,
        orchestrator=orchestrator,
        settings=settings,
    )


async def process_voice(
    transcript: Optional[str],
    *,
    gateway: BaseProvider,
    orchestrator: SessionOrchestrator,
    settings: Optional[Settings] = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    cleaned = _require(transcript, "Transcript")
    if len(cleaned) > settings.text_input_max_length:
        raise InvalidInput(f"Transcript is too long (max {settings.text_input_max_length} characters)")
    _ensure_configured(gateway)
    return await _ingest_messages(
        "voice",
        cleaned,
        voice_messages(cleaned),
        gateway=gateway,
        orchestrator=orchestrator,
        settings=settings,
    )


async def load_bill_image(storage: BillStorage, storage_path: str, settings: Settings) -> str:
    """Download a bill image and return it as an inline ``data:`` URL."""
    try:
        stored = await storage.download(storage_path)
    except StorageAccessDenied as exc:
        raise InvalidInput("Invalid storage_path") from exc
    except StorageError as exc:
        logger.error("Bill image download failed path=%s: %s", storage_path, exc)
        raise AIServiceUnavailable() from exc

    prepared = prepare_bill_image(
        stored.content,
        stored.content_type,
        max_bytes=settings.bill_image_max_bytes,
        max_side=settings.bill_image_max_side,
    )
    return prepared.to_data_url()


async def process_bill(
    storage_path: Optional[str],
    *,
    gateway: BaseProvider,
    orchestrator: SessionOrchestrator,
    storage: BillStorage,
    settings: Optional[Settings] = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    path = _require(storage_path, "storage_path")
    _ensure_configured(gateway)

    image = await load_bill_image(storage, path, settings)
    config = resolve("bill_scan", settings)
    parsed, raw_items = await _call_gateway(
        lambda: gateway.generate_vision(BILL_PROMPT, image, **config.call_kwargs()),
        scope="bill_scan",
        prompt_text=BILL_PROMPT,
        actor_id=orchestrator.user_id,
    )

    valid_items = [
        item
        for item in raw_items
        if isinstance(item, dict) and has_valid_amount(coerce_amount(item.get("amount")))
    ]
    if not valid_items:
        raise NoDataExtracted()

    session, rows = orchestrator.build_batch("bill_scan", path, valid_items, ai_raw_output=parsed)
    inserted = await orchestrator.persist_batch(session, rows)
    return {"session_id": session["id"], "transactions": inserted}


def stream_bill_events(
    storage_path: Optional[str],
    *,
    gateway: BaseProvider,
    orchestrator: SessionOrchestrator,
    storage: BillStorage,
    settings: Optional[Settings] = None,
) -> AsyncIterator[Optional[dict[str, Any]]]:
    """Validate the request, then return the orchestrator's event stream.

    Validation and configuration errors raise here, before any event is
    produced; everything after that is reported as a terminal ``error`` event.
    """
    settings = settings or get_settings()
    path = _require(storage_path, "storage_path")
    try:
        storage.check_owner(path)
    except StorageAccessDenied as exc:
        raise InvalidInput("Invalid storage_path") from exc
    _ensure_configured(gateway)

    config = resolve("bill_scan", settings)

    def on_result(result: ProviderResult) -> None:
        log_ai_run(
            scope="bill_scan",
            provider_result=result,
            prompt_text=BILL_PROMPT,
            actor_id=orchestrator.user_id,
            extra_meta={"streamed": True},
        )

    return orchestrator.stream_bill(
        gateway=gateway,
        prompt=BILL_PROMPT,
        load_image=lambda: load_bill_image(storage, path, settings),
        raw_input=path,
        call_kwargs=config.call_kwargs(),
        on_result=on_result,
    )
