"""Engine creation and session scoping for the entity store.

Services never build sessions themselves. They hold a :class:`Database` and
open a unit of work with :meth:`Database.session_scope`, which commits on
success and rolls back on error. Tests re-point the shared instance at an
in-memory engine with :meth:`Database.configure`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

LOGGER = logging.getLogger(__name__)


def create_engine_from_settings(settings: Optional[DatabaseSettings] = None) -> Engine:
    """Create an engine for *settings* (the environment when omitted)."""

    resolved = settings or get_database_settings()
    engine = create_engine(resolved.url, **resolved.engine_options())
    if resolved.is_sqlite:
        _enable_sqlite_foreign_keys(engine)
    return engine


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()


class Database:
    """Holds the engine and session factory used by every service."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine: Optional[Engine] = None
        self._factory: Optional[sessionmaker[Session]] = None
        if engine is not None:
            self.configure(engine)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.configure(create_engine_from_settings())
        assert self._engine is not None
        return self._engine

    def configure(self, engine: Engine) -> None:
        """Bind this database to *engine*, disposing of a previous one."""

        if self._engine is not None and self._engine is not engine:
            self._engine.dispose()
        self._engine = engine
        self._factory = sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.exec_driver_sql("SELECT 1")
        except Exception:  # pragma: no cover - reported through /health
            LOGGER.warning("database_ping_failed", exc_info=True)
            return False
        return True

    def new_session(self) -> Session:
        if self._factory is None:
            self.configure(create_engine_from_settings())
        assert self._factory is not None
        return self._factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Context manager yielding a session that commits on success."""

        session = self.new_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


database = Database()


__all__ = ["Database", "create_engine_from_settings", "database"]
