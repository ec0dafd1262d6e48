"""Pytest configuration and fixtures."""

import os

# Must be set before zapflow.infra.config is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")

import pytest
from sqlalchemy.orm import sessionmaker

from zapflow.infra.database import build_engine, session_scope_factory
from zapflow.services.storage_service import StorageService, metadata


@pytest.fixture
def session_scope():
    """Transactional scope over a fresh in-memory database."""
    engine = build_engine("sqlite:///:memory:")
    metadata.create_all(engine)
    yield session_scope_factory(sessionmaker(bind=engine, autocommit=False, autoflush=False))
    engine.dispose()


@pytest.fixture
def storage(session_scope):
    return StorageService(session_scope=session_scope, tenant_id="test-tenant")
