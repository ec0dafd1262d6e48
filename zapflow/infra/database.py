"""Database engine and session management."""

from contextlib import contextmanager
from typing import Callable, Generator
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from zapflow.infra.config import config


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; pooling options only apply to server databases."""
    if database_url.startswith("sqlite"):
        # In-memory databases live on one connection
        poolclass = StaticPool if ":memory:" in database_url else None
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=poolclass,
            echo=echo,
        )
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=10,  # Number of connections to maintain
        max_overflow=20,  # Max connections beyond pool_size
        pool_timeout=30,  # Seconds to wait for connection from pool
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


engine = build_engine(config.DATABASE_URL, echo=config.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def session_scope_factory(factory: Callable[[], Session]):
    """
    Build a transactional scope around a session factory.

    Commits on success, rolls back on error, always closes.
    """
    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


get_db_session = session_scope_factory(SessionLocal)


def get_db() -> Generator[Session, None, None]:
    """Dependency for FastAPI routes."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
