"""Ingestion contracts: normalized items, source defaults and HTTP payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

Source = Literal["bill_scan", "voice", "text"]
TransactionType = Literal["expense", "income"]


class IngestState(str, Enum):
    CREATED = "created"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceDefaults:
    """Per-source fallbacks applied by the normalizer and persisted rows."""

    source: Source
    title: str
    currency: str
    note: str
    category: str = "Other"
    keep_merchant: bool = False
    expense_only: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class NormalizedItem:
    title: str
    amount: float
    currency: str
    category: str
    type: TransactionType
    merchant: Optional[str] = None


# --- HTTP payloads ---


class TextIngestRequest(BaseModel):
    text: Optional[str] = None


class VoiceIngestRequest(BaseModel):
    transcript: Optional[str] = None


class BillIngestRequest(BaseModel):
    storage_path: Optional[str] = None


class TransactionOut(BaseModel):
    id: str
    user_id: str
    session_id: str
    title: str
    amount: float
    currency: str
    category: str
    icon: str = "receipt"
    icon_bg: str = "bg-slate-50"
    icon_color: str = "text-slate-500"
    type: TransactionType
    source: Source
    note: Optional[str] = None
    merchant: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IngestResponse(BaseModel):
    session_id: str
    transactions: list[TransactionOut]


class SessionOut(BaseModel):
    id: str
    source: Source
    raw_input: Optional[str] = None
    record_count: int
    total_amount: float
    currency: Optional[str] = None
    created_at: Optional[datetime] = None


class SessionDetailOut(SessionOut):
    ai_raw_output: Optional[Any] = None
    transactions: list[TransactionOut] = Field(default_factory=list)


class SessionPageOut(BaseModel):
    sessions: list[SessionOut]
    has_more: bool


class SignedUrlRequest(BaseModel):
    storage_path: Optional[str] = None


class SignedUrlOut(BaseModel):
    signed_url: str
    expires_in: int
