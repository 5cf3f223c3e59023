"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from api.open_finance import get_open_finance_service
from database import Base, enable_sqlite_foreign_keys, get_db
from main import app
from models.enums import ConnectionStatus, ExecutionStatus
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import (  # noqa: F401
    connection,
    make_service,
    mfa_connection,
    oauth_connection,
)
from tests.fixtures.mocks import MockPluggyClient, make_item


@pytest.fixture(name="db")
def db_fixture():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(name="mock_pluggy")
def mock_pluggy_fixture():
    """A mock aggregator whose connections are immediately UPDATED."""
    return MockPluggyClient(
        items=[make_item(ConnectionStatus.UPDATED, execution_status=ExecutionStatus.SUCCESS)]
    )


@pytest.fixture(name="service")
def service_fixture(mock_pluggy):
    return make_service(mock_pluggy)


@pytest.fixture(name="client")
def client_fixture(db, service):
    """Create a test client with the test database and mock aggregator."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_open_finance_service] = lambda: service
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
