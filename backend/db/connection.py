"""Database engine construction, session scopes and schema bootstrap.

Engines and session factories are built explicitly and handed to the services
that need them; the caller owns their lifecycle (``engine.dispose()``).
"""

from collections.abc import Generator
from contextlib import contextmanager

import structlog
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import DatabaseSettings, RegistrySettings
from db.models import Base

logger = structlog.get_logger(__name__)

REQUIRED_TABLES = (
    "provider_leaderboard",
    "provider_transactions",
    "block_processing_log",
    "tracker_state",
    "processing_runs",
)


def create_db_engine(url: str, echo: bool = False, **pool_opts: int) -> Engine:
    """Create an engine for ``url``. SQLite connections get the usual pragmas."""
    opts: dict = {"echo": echo}
    is_sqlite = url.startswith("sqlite")
    if not is_sqlite:
        opts.update(pool_opts)
        opts["pool_pre_ping"] = True

    engine = create_engine(url, **opts)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=30000")
            cur.execute("PRAGMA synchronous=NORMAL")
            cur.close()

    return engine


def create_payments_engine(settings: DatabaseSettings, echo: bool = False) -> Engine:
    """Engine for the payments ledger described by ``settings``."""
    return create_db_engine(
        settings.url,
        echo=echo,
        pool_size=settings.pool_size,
        pool_timeout=settings.pool_timeout,
        pool_recycle=settings.pool_recycle,
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """One unit of work: commit on success, roll back everything on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def missing_tables(engine: Engine) -> list[str]:
    """Return required tables that are missing."""
    existing = set(inspect(engine).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing]


def init_schema(engine: Engine) -> None:
    """Create the payments schema. Idempotent."""
    before = missing_tables(engine)
    Base.metadata.create_all(engine)
    still_missing = missing_tables(engine)

    if still_missing:
        raise RuntimeError(f"Schema init failed: missing tables {still_missing}")
    if before:
        logger.info("Schema init: created tables", tables=before)
    else:
        logger.debug("Schema init: all tables present")


def create_registry_engine(settings: RegistrySettings) -> Engine:
    """Engine for the read-only namespace indexer database."""
    url = settings.database_url.strip()
    if not url:
        raise RuntimeError("INDEXER_DATABASE_URL is not set")
    return create_db_engine(url)
