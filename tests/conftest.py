"""Test configuration and fixtures."""

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from git_gateway.api import app
from git_gateway.config import settings
from git_gateway.db.base import Base, create_db_engine, get_db
from git_gateway.git.locks import RepositoryLockManager
from git_gateway.repositories.manager import RepositoryManager


@pytest.fixture
def engine():
    """In-memory SQLite engine with every table created."""
    from git_gateway.db import models  # noqa: F401

    test_engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def git_root(tmp_path, monkeypatch) -> str:
    """Point the gateway's repository storage at a temporary directory."""
    root = tmp_path / "repositories"
    root.mkdir()
    monkeypatch.setattr(settings, "git_root", str(root))
    return str(root)


@pytest.fixture
def locks() -> RepositoryLockManager:
    return RepositoryLockManager(timeout=5)


@pytest.fixture
def manager(db_session, locks, git_root) -> RepositoryManager:
    return RepositoryManager(db_session, locks=locks, git_root=git_root)


@pytest.fixture
def client(session_factory, git_root, monkeypatch) -> Generator[TestClient, None, None]:
    """
    Test client bound to the in-memory database.

    The lifespan is not entered, so no database file is created on disk.
    """
    monkeypatch.setattr(settings, "api_token", None)
    monkeypatch.setattr(settings, "webhook_secret", None)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
