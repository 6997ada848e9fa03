import io
import uuid
from typing import Optional

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from huanale.core.config import get_settings
from huanale.core.storage import StorageError, StoredObject
from huanale.models.ledger import Base
from huanale.utils.rate_limit import rate_limiter


def image_bytes(size=(8, 8), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests mutate env vars; never leak a cached Settings instance across tests.
    get_settings.cache_clear()
    rate_limiter.reset()
    yield
    get_settings.cache_clear()
    rate_limiter.reset()


def make_session_factory():
    """In-memory SQLite shared by every session (and worker thread) of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def session_factory():
    engine, factory = make_session_factory()
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def user_id() -> str:
    return str(uuid.uuid4())


class FakeBillStorage:
    """Stands in for ``BillStorage``; same ownership rule, in-memory objects."""

    def __init__(self, user_id: str, objects: Optional[dict[str, bytes]] = None, *, fail: bool = False) -> None:
        self.user_id = str(user_id)
        self.objects = dict(objects or {})
        self.fail = fail
        self.downloads: list[str] = []

    def check_owner(self, path: str) -> None:
        from huanale.core.storage import StorageAccessDenied

        if not path.startswith(f"{self.user_id}/") or ".." in path.split("/"):
            raise StorageAccessDenied(path)

    async def download(self, path: str) -> StoredObject:
        self.check_owner(path)
        self.downloads.append(path)
        if self.fail or path not in self.objects:
            raise StorageError(f"missing {path}")
        return StoredObject(path=path, content=self.objects[path], content_type="image/png")

    async def create_signed_url(self, path: str, expires_in: int) -> str:
        self.check_owner(path)
        if self.fail:
            raise StorageError(f"signing failed for {path}")
        return f"https://storage.test/{path}?ttl={expires_in}"
