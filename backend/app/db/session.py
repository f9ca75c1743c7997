from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


def build_engine(database_url: str) -> Engine:
    kwargs: Dict[str, Any] = {"future": True, "echo": False, "pool_pre_ping": True}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # one shared connection so every session sees the same in-memory database
        kwargs = {
            "future": True,
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return create_engine(database_url, **kwargs)


class Database:
    """Storage client handed to every service that touches persistence."""

    def __init__(self, database_url: Optional[str] = None, *, engine: Optional[Engine] = None):
        if engine is None:
            if database_url is None:
                from backend.app.core.settings import settings

                database_url = settings.database_url
            engine = build_engine(database_url)
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False
        )

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        from backend.app.db.models import Base

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
