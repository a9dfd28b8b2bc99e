from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the service engine.

    SQLite connections are shared across threads (the ASGI server runs
    handlers off the connecting thread) and get explicit BEGIN so that
    SAVEPOINTs nest inside the request transaction.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    # Use NullPool behind PgBouncer to avoid double pooling
    if "-pooler" in database_url or "pgbouncer=true" in database_url:
        return create_engine(database_url, echo=echo, poolclass=NullPool)
    return create_engine(
        database_url, echo=echo, pool_size=20, max_overflow=40, pool_pre_ping=True
    )


class SessionManager:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._factory = sessionmaker(bind=engine, expire_on_commit=False)

    def get_session(self) -> Session:
        """
        Returns a raw session.
        Caller MUST manually commit/rollback and close the session.
        Use with_session() instead for automatic cleanup.
        """
        return self._factory()

    @contextmanager
    def with_session(self) -> Iterator[Session]:
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
