"""Test fixtures and sample data."""
import pytest
from sqlalchemy.orm import Session

from models import Connection, ConnectionStatus
from services.open_finance_service import OpenFinanceService
from tests.fixtures.mocks import OAUTH_PARAMETER, TOKEN_PARAMETER


def make_service(client, max_attempts: int = 3, opener=None) -> OpenFinanceService:
    """An OpenFinanceService over ``client`` that never sleeps."""
    return OpenFinanceService(
        client,
        sleep=lambda seconds: None,
        opener=opener or (lambda url: None),
        max_attempts=max_attempts,
        interval_ms=0,
    )


def create_connection(
    db: Session,
    status: ConnectionStatus = ConnectionStatus.UPDATED,
    connection_id: str = "item-1",
    user_id: str = "user-1",
    pending_challenge: dict | None = None,
    error_message: str | None = None,
    aggregator: str = "Pluggy",
) -> Connection:
    """Insert a connection row directly, bypassing the state machine."""
    conn = Connection(
        connection_id=connection_id,
        aggregator=aggregator,
        user_id=user_id,
        institution_id="201",
        institution_name="Banco Exemplo",
        status=status.value,
        pending_challenge=pending_challenge,
        error_message=error_message,
    )
    db.add(conn)
    db.commit()
    db.refresh(conn)
    return conn


@pytest.fixture
def connection(db: Session) -> Connection:
    """A connection whose data is ready."""
    return create_connection(db)


@pytest.fixture
def mfa_connection(db: Session) -> Connection:
    """A connection waiting for a 6-digit token."""
    return create_connection(
        db,
        status=ConnectionStatus.WAITING_INPUT,
        pending_challenge={"kind": "MFA", "payload": TOKEN_PARAMETER},
    )


@pytest.fixture
def oauth_connection(db: Session) -> Connection:
    """A connection waiting for the user to finish the bank's OAuth page."""
    return create_connection(
        db,
        status=ConnectionStatus.WAITING_INPUT,
        pending_challenge={"kind": "OAUTH", "payload": OAUTH_PARAMETER},
    )
