"""SQLAlchemy engine and session primitives shared by workers and the backfill."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings


Base = declarative_base()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    database_url = get_settings().database_url
    options: dict[str, object] = {"pool_pre_ping": True, "future": True}
    # Worker pools share the engine across threads.
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    return create_engine(database_url, **options)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Yield a session that is always closed; callers commit explicitly."""

    session = (session_factory or get_session_factory())()
    try:
        yield session
    finally:
        session.close()


def ping_database(engine: Optional[Engine] = None) -> Tuple[bool, Optional[str]]:
    """Run ``SELECT 1``; returns ``(ok, error)`` instead of raising."""

    try:
        with (engine or get_engine()).connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return False, str(exc)
    return True, None


def load_models() -> None:
    """Register every mapped table on ``Base.metadata``."""

    import src.storage.models  # noqa: F401
