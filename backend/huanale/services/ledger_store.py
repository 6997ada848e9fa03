"""User-scoped access to input sessions and transactions.

``LedgerStore`` is the only way the ingestion pipeline touches the data
store. Every query filters on the bound user id and every insert stamps it,
so one user's request can never read or write another user's rows.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from huanale.models.ledger import InputSession, Transaction

logger = logging.getLogger(__name__)

SESSION_FIELDS = ("source", "raw_input", "ai_raw_output", "record_count", "total_amount", "currency")
UPDATABLE_SESSION_FIELDS = frozenset({"ai_raw_output", "record_count", "total_amount", "currency"})
TRANSACTION_FIELDS = (
    "title",
    "amount",
    "currency",
    "category",
    "icon",
    "icon_bg",
    "icon_color",
    "type",
    "source",
    "note",
    "merchant",
    "description",
)


class StoreError(Exception):
    """A data-store write or read failed."""


def _amount(value: Any) -> float:
    if isinstance(value, Decimal):
        return float(value)
    return float(value or 0)


def session_to_dict(row: InputSession, *, include_raw_output: bool = False) -> dict[str, Any]:
    data = {
        "id": str(row.id),
        "user_id": str(row.user_id),
        "source": row.source,
        "raw_input": row.raw_input,
        "record_count": int(row.record_count or 0),
        "total_amount": _amount(row.total_amount),
        "currency": row.currency,
        "created_at": row.created_at,
    }
    if include_raw_output:
        data["ai_raw_output"] = row.ai_raw_output
    return data


def transaction_to_dict(row: Transaction) -> dict[str, Any]:
    data = {field: getattr(row, field) for field in TRANSACTION_FIELDS}
    data.update(
        id=str(row.id),
        user_id=str(row.user_id),
        session_id=str(row.session_id),
        amount=_amount(row.amount),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
    return data


def _uuid(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return value


class LedgerStore:
    def __init__(self, db: Session, user_id: str) -> None:
        self._db = db
        self._user_id = _uuid(user_id)

    @property
    def user_id(self) -> str:
        return str(self._user_id)

    def _commit(self, action: str) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.error("Store %s failed for user %s: %s", action, self._user_id, exc)
            raise StoreError(f"{action} failed") from exc

    def _new_transaction(self, row: dict[str, Any]) -> Transaction:
        values = {field: row[field] for field in TRANSACTION_FIELDS if field in row}
        return Transaction(
            id=_uuid(row.get("id") or uuid.uuid4()),
            user_id=self._user_id,
            session_id=_uuid(row["session_id"]),
            **values,
        )

    # --- sync implementations (run in a worker thread) ---

    def _insert_session(self, values: dict[str, Any]) -> dict[str, Any]:
        row = InputSession(
            id=_uuid(values.get("id") or uuid.uuid4()),
            user_id=self._user_id,
            **{field: values[field] for field in SESSION_FIELDS if field in values},
        )
        self._db.add(row)
        self._commit("insert_session")
        return session_to_dict(row)

    def _insert_transactions(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        models = [self._new_transaction(r) for r in rows]
        self._db.add_all(models)
        self._commit("insert_transactions")
        return [transaction_to_dict(m) for m in models]

    def _update_session(self, session_id: str, values: dict[str, Any]) -> dict[str, Any]:
        unknown = set(values) - UPDATABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {sorted(unknown)}")
        row = self._get_session_row(session_id)
        if row is None:
            raise StoreError(f"session {session_id} not found")
        for field, value in values.items():
            setattr(row, field, value)
        self._commit("update_session")
        return session_to_dict(row)

    def _get_session_row(self, session_id: str) -> Optional[InputSession]:
        try:
            return self._db.execute(
                select(InputSession).where(
                    InputSession.id == _uuid(session_id),
                    InputSession.user_id == self._user_id,
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError("select session failed") from exc

    def _get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        row = self._get_session_row(session_id)
        return session_to_dict(row, include_raw_output=True) if row else None

    def _list_sessions(self, page: int, page_size: int) -> tuple[list[dict[str, Any]], bool]:
        try:
            rows = (
                self._db.execute(
                    select(InputSession)
                    .where(InputSession.user_id == self._user_id)
                    .order_by(InputSession.created_at.desc(), InputSession.id.desc())
                    .offset(page * page_size)
                    .limit(page_size + 1)
                )
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise StoreError("list sessions failed") from exc
        has_more = len(rows) > page_size
        return [session_to_dict(r) for r in rows[:page_size]], has_more

    def _list_transactions(self, session_id: str) -> list[dict[str, Any]]:
        try:
            rows = (
                self._db.execute(
                    select(Transaction)
                    .where(
                        Transaction.session_id == _uuid(session_id),
                        Transaction.user_id == self._user_id,
                    )
                    .order_by(Transaction.created_at.asc())
                )
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise StoreError("list transactions failed") from exc
        return [transaction_to_dict(r) for r in rows]

    # --- async API ---

    async def insert_session(self, values: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._insert_session, values)

    async def insert_transactions(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        return await asyncio.to_thread(self._insert_transactions, rows)

    async def insert_transaction(self, row: dict[str, Any]) -> dict[str, Any]:
        inserted = await asyncio.to_thread(self._insert_transactions, [row])
        return inserted[0]

    async def update_session(self, session_id: str, **values: Any) -> dict[str, Any]:
        return await asyncio.to_thread(self._update_session, session_id, values)

    async def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        return await asyncio.to_thread(self._get_session, session_id)

    async def list_sessions(self, page: int = 0, page_size: int = 20) -> tuple[list[dict[str, Any]], bool]:
        return await asyncio.to_thread(self._list_sessions, page, page_size)

    async def list_transactions(self, session_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_transactions, session_id)
