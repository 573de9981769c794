"""Database engine and the entity store.

`EntityStore` wraps a SQLModel/SQLAlchemy engine. By default it points
at a private in-memory SQLite database that lives as long as the store
object, which is what the application and the tests use; passing a file
or server URL gives a durable store without changing any service code.

Every unit of work runs through `EntityStore.session()`, which holds a
store-wide re-entrant lock for the duration of the session. That lock
is the single-writer serialization point: "check there is no active
attempt, then create one" and "check the attempt is open, then score
and close it" each happen inside one session and therefore cannot
interleave with another request.
"""

import threading
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from . import models  # noqa: F401  registers the tables on SQLModel.metadata


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class EntityStore:
    """Explicitly constructed relational store shared by the services."""

    def __init__(self, url: str = "sqlite://", echo: bool = False):
        self.url = url
        connect_args = {}
        kwargs = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        if _is_memory_url(url):
            # one connection, otherwise every session would get an empty database
            kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, echo=echo, connect_args=connect_args, **kwargs)
        self._lock = threading.RLock()

    def create_all(self) -> None:
        """Create all tables. Safe to call repeatedly."""
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a locked `Session`; commit on success, roll back on error."""
        with self._lock:
            with Session(self.engine, expire_on_commit=False) as session:
                try:
                    yield session
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

    def dispose(self) -> None:
        self.engine.dispose()


def get_store(request: Request) -> EntityStore:
    """FastAPI dependency returning the store attached to the running app."""
    return request.app.state.store
