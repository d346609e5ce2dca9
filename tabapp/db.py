"""Engine, session factory and transaction helpers."""

from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from tabapp.config import settings


def configure_sqlite(engine: Engine) -> None:
    """Make SQLite honour foreign keys, SAVEPOINTs and transactional DDL.

    pysqlite opens transactions lazily and only before DML, so the driver is
    put in autocommit mode and SQLAlchemy emits BEGIN itself. Transactions
    start IMMEDIATE, taking the write lock up front in place of row locks.
    """

    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def build_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.database_url_normalized
    if url.startswith('sqlite'):
        kwargs.setdefault('connect_args', {'check_same_thread': False})
        engine = create_engine(url, echo=settings.sql_echo, **kwargs)
        configure_sqlite(engine)
        return engine

    kwargs.setdefault(
        'connect_args',
        {'options': f'-c statement_timeout={settings.statement_timeout_ms}'},
    )
    return create_engine(url, echo=settings.sql_echo, pool_pre_ping=True, **kwargs)


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing at all."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
