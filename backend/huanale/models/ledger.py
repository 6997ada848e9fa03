import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()

SOURCES = ("bill_scan", "voice", "text")
TRANSACTION_TYPES = ("expense", "income")


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InputSession(Base):
    """One ingestion event: a photo, a voice utterance or a text submission."""

    __tablename__ = "input_sessions"
    __table_args__ = (
        CheckConstraint("source IN ('bill_scan', 'voice', 'text')", name="ck_input_sessions_source"),
        Index("ix_input_sessions_user_created", "user_id", "created_at"),
    )

    # Assigned by the application so the id is known before the row commits.
    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID_TYPE, nullable=False)
    source = Column(String(16), nullable=False)
    raw_input = Column(Text)
    ai_raw_output = Column(JSON_TYPE)
    record_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    total_amount = Column(Numeric(14, 2), nullable=False, default=0, server_default=text("0"))
    currency = Column(String(16))
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_nonnegative"),
        CheckConstraint("type IN ('expense', 'income')", name="ck_transactions_type"),
        Index("ix_transactions_user_created", "user_id", "created_at"),
        Index("ix_transactions_session", "session_id"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID_TYPE, nullable=False)
    session_id = Column(UUID_TYPE, ForeignKey("input_sessions.id"), nullable=False)
    title = Column(String(255), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(16), nullable=False)
    category = Column(String(64), nullable=False, default="Other", server_default=text("'Other'"))
    icon = Column(String(64), nullable=False, default="receipt", server_default=text("'receipt'"))
    icon_bg = Column(String(64), nullable=False, default="bg-slate-50", server_default=text("'bg-slate-50'"))
    icon_color = Column(String(64), nullable=False, default="text-slate-500", server_default=text("'text-slate-500'"))
    type = Column(String(16), nullable=False, default="expense", server_default=text("'expense'"))
    source = Column(String(16), nullable=False)
    note = Column(String(255))
    merchant = Column(String(255))
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)
