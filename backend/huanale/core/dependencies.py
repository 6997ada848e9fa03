from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from huanale.core.config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()


@lru_cache
def get_session_factory() -> sessionmaker:
    """Session factory bound to ``DATABASE_URL``.

    Request handlers use ``get_db``; streams and background writes open their
    own sessions from this factory because they outlive the request.
    """
    url = get_settings().database_url
    if not url:
        raise RuntimeError("DATABASE_URL is not configured")

    # Store calls run in worker threads, so SQLite connections must cross threads.
    connect_args = {"check_same_thread": False, "timeout": 30} if _is_sqlite(url) else {}
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    if _is_sqlite(url):
        _enable_sqlite_foreign_keys(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
