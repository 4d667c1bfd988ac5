# File: src/gatherpay/infrastructure/db/uow.py
"""
Engine, session factory and the unit-of-work context manager.

Services receive a `session_scope` callable at construction; the module-level
one below is bound to the configured database, tests build their own with
`make_session_scope`. A scope must never span an `await` on network I/O.
"""

import logging
from contextlib import contextmanager
from typing import Callable, ContextManager, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from gatherpay.config import settings
from .models import Base

log = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


def normalize_database_url(database_url: str) -> str:
    """Hosted Postgres hands out `postgres://` URLs; SQLAlchemy wants a driver."""
    database_url = database_url.strip()
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg://", 1)
    return database_url


def build_engine(database_url: str) -> Engine:
    database_url = normalize_database_url(database_url)
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


log.debug(f"Initializing database engine for URL: ...{settings.DATABASE_URL[-20:]}")
engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_tables(bind: Engine = engine) -> None:
    """Creates all tables defined in the models package (dev/test only; prod uses Alembic)."""
    log.info("Creating database tables if they do not exist...")
    try:
        Base.metadata.create_all(bind)
        log.info("Database tables checked/created successfully.")
    except Exception as e:
        log.critical(f"Failed to create database tables: {e}", exc_info=True)
        raise


def make_session_scope(factory: Callable[[], Session]) -> SessionScope:
    """Build a `session_scope()` bound to the given session factory."""

    @contextmanager
    def _scope() -> Generator[Session, None, None]:
        session = factory()
        log.debug(f"Session {id(session)} opened.")
        try:
            yield session
            session.commit()
            log.debug(f"Session {id(session)} committed.")
        except Exception as e:
            log.debug(f"Session {id(session)} rollback due to exception: {e!r}")
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


session_scope = make_session_scope(SessionLocal)
