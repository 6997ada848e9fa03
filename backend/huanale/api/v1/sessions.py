"""Session history and bill storage access for the signed-in user."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from huanale.api.deps import get_bill_storage, get_ledger_store
from huanale.core.config import get_settings
from huanale.core.storage import BillStorage, StorageAccessDenied, StorageError
from huanale.services.ingestion.contracts import (
    SessionDetailOut,
    SessionPageOut,
    SignedUrlOut,
    SignedUrlRequest,
)
from huanale.services.ledger_store import LedgerStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/sessions", response_model=SessionPageOut)
async def list_sessions(
    page: int = Query(0, ge=0),
    page_size: int = Query(20, ge=1, le=100),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Newest sessions first; ``has_more`` tells whether another page exists."""
    try:
        sessions, has_more = await store.list_sessions(page, page_size)
    except StoreError as exc:
        raise HTTPException(500, "Failed to load sessions") from exc
    return {"sessions": sessions, "has_more": has_more}


@router.get("/sessions/{session_id}", response_model=SessionDetailOut)
async def get_session(
    session_id: str,
    store: LedgerStore = Depends(get_ledger_store),
):
    try:
        session = await store.get_session(session_id)
        if session is None:
            raise HTTPException(404, "Session not found")
        transactions = await store.list_transactions(session_id)
    except StoreError as exc:
        raise HTTPException(500, "Failed to load session") from exc
    return {**session, "transactions": transactions}


@router.post("/storage/bills/signed-url", response_model=SignedUrlOut)
async def create_bill_signed_url(
    payload: SignedUrlRequest,
    storage: BillStorage = Depends(get_bill_storage),
):
    path = (payload.storage_path or "").strip()
    if not path:
        raise HTTPException(400, "storage_path is required")

    expires_in = get_settings().bill_signed_url_ttl_seconds
    try:
        url = await storage.create_signed_url(path, expires_in)
    except StorageAccessDenied as exc:
        raise HTTPException(400, "Invalid storage_path") from exc
    except StorageError as exc:
        logger.error("Signed URL failed path=%s: %s", path, exc)
        raise HTTPException(502, "Storage unavailable") from exc
    return {"signed_url": url, "expires_in": expires_in}
