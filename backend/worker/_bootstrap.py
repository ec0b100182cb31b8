"""Shared setup for worker entrypoints: logging and database lifecycles."""

from collections.abc import Generator
from contextlib import contextmanager

import structlog
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from db.connection import (
    build_session_factory,
    create_payments_engine,
    create_registry_engine,
    init_schema,
)
from paytracker.log_config import configure_logging

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def setup_logging(settings: Settings) -> None:
    configure_logging(
        "DEBUG" if settings.debug else settings.log_level,
        settings.log_format,
    )


@contextmanager
def payments_db(settings: Settings) -> Generator[sessionmaker[Session], None, None]:
    """Session factory for the payments ledger; schema created on entry."""
    engine = create_payments_engine(settings.database)
    logger.info("Payments database", db=settings.database.db_info_for_logging())
    try:
        init_schema(engine)
        yield build_session_factory(engine)
    finally:
        engine.dispose()


@contextmanager
def registry_db(settings: Settings) -> Generator[sessionmaker[Session], None, None]:
    engine = create_registry_engine(settings.registry)
    logger.info("Registry database", db=settings.registry.db_info_for_logging())
    try:
        yield build_session_factory(engine)
    finally:
        engine.dispose()
