"""SQLAlchemy engine & session factory for the sync run log."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from entsync.stores.tables import Base


def database_url(path: str) -> str:
    if path == ":memory:":
        return "sqlite://"
    return f"sqlite:///{path}"


def create_store_engine(path: str) -> Engine:
    """Create an engine for ``path`` and make sure the schema exists."""
    if path == ":memory:":
        # One shared connection, or every checkout would see an empty database
        engine = create_engine(
            database_url(path),
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(database_url(path), connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)
