"""Request-scoped collaborators for the ingestion routers.

Tests swap these out through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from huanale.core.auth import CurrentUser, get_current_user
from huanale.core.dependencies import get_db, get_session_factory
from huanale.core.storage import BillStorage, build_bill_storage
from huanale.services.ai.common.providers import BaseProvider, get_provider
from huanale.services.ingestion.orchestrator import SessionFactory, SessionOrchestrator
from huanale.services.ledger_store import LedgerStore


def get_model_gateway() -> BaseProvider:
    return get_provider()


def get_db_session_factory() -> SessionFactory:
    return get_session_factory()


def get_bill_storage(current_user: CurrentUser = Depends(get_current_user)) -> BillStorage:
    return build_bill_storage(current_user.id)


def get_orchestrator(
    current_user: CurrentUser = Depends(get_current_user),
    session_factory: SessionFactory = Depends(get_db_session_factory),
) -> SessionOrchestrator:
    return SessionOrchestrator(current_user.id, session_factory)


def get_ledger_store(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> LedgerStore:
    return LedgerStore(db, current_user.id)
