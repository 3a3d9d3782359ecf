"""
Module: ledger_kernel.db.engine
Responsibility: Engine construction, the process-wide session factory, and
    the transactional scope every outer caller runs ledger work in.
Architecture position: Kernel > DB.  May import from db/base.py.
    create_tables/drop_tables import models to populate Base.metadata.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED; posting serializes per period
      with SELECT ... FOR UPDATE on the period row.
    - SQLite runs with the driver's implicit transactions disabled, so
      BEGIN and SAVEPOINT (batch posting, per-rule accrual isolation)
      behave as they do on PostgreSQL.
    - Services only flush().  session_scope() owns commit and rollback.

Failure modes:
    - RuntimeError from get_engine/get_session/get_session_factory before
      init_engine_from_url().
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_IN_MEMORY_SQLITE = ("sqlite://", "sqlite+pysqlite://")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Engine:
    """
    Build an Engine for ``database_url`` without touching module state.

    In-memory SQLite shares a single connection through StaticPool, so
    every session sees the same database (and no two sessions can hold
    transactions at once).
    """
    if database_url.startswith("sqlite"):
        options: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in _IN_MEMORY_SQLITE:
            options["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **options)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> Engine:
    """
    Install the process-wide engine and session factory.

    A second call disposes the previous engine first.
    """
    global _engine, _SessionFactory

    reset_engine()
    _engine = create_engine_from_url(
        database_url, echo=echo, pool_size=pool_size, max_overflow=max_overflow
    )
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={
            "dialect": _engine.dialect.name,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
        },
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """The shared factory; worker threads open their own sessions from it."""
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    One unit of ledger work: commit on success, roll back on any exception.

    The exception propagates unchanged.

    Usage:
        with session_scope(factory) as session:
            PostingService(session, clock).post(entry_id, actor_id)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.debug(
            "transaction_rolled_back",
            extra={"error_type": type(exc).__name__},
        )
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create every ledger table (importing the models registers them)."""
    from ledger_kernel.db.base import Base
    import ledger_kernel.models  # noqa: F401

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    from ledger_kernel.db.base import Base
    import ledger_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the process-wide engine, if any, and forget the factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


atexit.register(reset_engine)
