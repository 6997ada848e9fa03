"""Ingestion endpoints: text, voice and bill image (plain and SSE)."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse

from huanale.api.deps import get_bill_storage, get_model_gateway, get_orchestrator
from huanale.core.storage import BillStorage
from huanale.services.ai.common.providers import BaseProvider
from huanale.services.ingestion import service
from huanale.services.ingestion.contracts import (
    BillIngestRequest,
    IngestResponse,
    TextIngestRequest,
    VoiceIngestRequest,
)
from huanale.services.ingestion.orchestrator import SessionOrchestrator

router = APIRouter()

KEEPALIVE_FRAME = ": keep-alive\n\n"


def sse_frame(event: Optional[dict[str, Any]]) -> str:
    if event is None:
        return KEEPALIVE_FRAME
    return f"data: {json.dumps(jsonable_encoder(event), ensure_ascii=False)}\n\n"


async def _sse(events: AsyncIterator[Optional[dict[str, Any]]]) -> AsyncIterator[str]:
    async for event in events:
        yield sse_frame(event)


@router.post("/ingest/text", response_model=IngestResponse)
async def ingest_text(
    payload: TextIngestRequest,
    gateway: BaseProvider = Depends(get_model_gateway),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return await service.process_text(payload.text, gateway=gateway, orchestrator=orchestrator)


@router.post("/ingest/voice", response_model=IngestResponse)
async def ingest_voice(
    payload: VoiceIngestRequest,
    gateway: BaseProvider = Depends(get_model_gateway),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    return await service.process_voice(payload.transcript, gateway=gateway, orchestrator=orchestrator)


@router.post("/ingest/bill", response_model=IngestResponse)
async def ingest_bill(
    payload: BillIngestRequest,
    gateway: BaseProvider = Depends(get_model_gateway),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    storage: BillStorage = Depends(get_bill_storage),
):
    return await service.process_bill(
        payload.storage_path,
        gateway=gateway,
        orchestrator=orchestrator,
        storage=storage,
    )


@router.post("/ingest/bill/stream")
async def ingest_bill_stream(
    payload: BillIngestRequest,
    gateway: BaseProvider = Depends(get_model_gateway),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    storage: BillStorage = Depends(get_bill_storage),
):
    """SSE stream: ``session_created``, ``transaction_inserted``…, then ``completed`` or ``error``."""
    # Validation errors raise here, before the response starts.
    events = service.stream_bill_events(
        payload.storage_path,
        gateway=gateway,
        orchestrator=orchestrator,
        storage=storage,
    )

    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
