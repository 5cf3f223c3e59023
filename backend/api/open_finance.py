"""Open finance API endpoints: institutions, connections, challenges and webhooks."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from api.helpers import connection_response, get_or_404, summary_response
from database import get_db
from models import BankAccount, BankTransaction
from schemas import (
    BankAccountResponse,
    BankTransactionResponse,
    ConnectionResponse,
    ConnectRequest,
    ConnectTokenRequest,
    ConnectTokenResponse,
    CredentialFieldResponse,
    InstitutionResponse,
    LinkRequest,
    MFASubmitRequest,
    OAuthCallbackRequest,
    SyncSummaryResponse,
    WebhookResponse,
)
from services.connection_registry import ConnectionRegistry
from services.errors import (
    AggregatorUnavailableError,
    ChallengeRejectedError,
    ChallengeStateError,
    ConnectionNotFoundError,
    LocalValidationError,
    OpenFinanceError,
)
from services.open_finance_service import OpenFinanceService
from services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/open-finance", tags=["open-finance"])

# Dependency injection for testing
_service_override: Optional[OpenFinanceService] = None


def get_open_finance_service() -> OpenFinanceService:
    """Get OpenFinanceService instance, allowing for test overrides."""
    if _service_override is not None:
        return _service_override
    return OpenFinanceService()


def set_open_finance_service_override(service: Optional[OpenFinanceService]) -> None:
    """Set an OpenFinanceService override for testing."""
    global _service_override
    _service_override = service


def _http_error(e: OpenFinanceError) -> HTTPException:
    """Map a core error to the HTTP status the client should see."""
    if isinstance(e, LocalValidationError):
        return HTTPException(
            status_code=422,
            detail={"message": str(e), "field_errors": e.field_errors},
        )
    if isinstance(e, ConnectionNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ChallengeStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ChallengeRejectedError):
        return HTTPException(status_code=400, detail={"message": str(e), "retryable": True})
    if isinstance(e, AggregatorUnavailableError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _unexpected(action: str) -> HTTPException:
    logger.error("Unexpected error during %s", action, exc_info=True)
    return HTTPException(status_code=500, detail=f"Unexpected error during {action}")


# ----------------------------------------------------------------------
# Aggregators & institutions
# ----------------------------------------------------------------------


@router.get("/aggregators", response_model=list[str])
def list_aggregators(service: OpenFinanceService = Depends(get_open_finance_service)):
    """Names of the aggregators with credentials configured."""
    return service.list_aggregators()


@router.get("/institutions", response_model=list[InstitutionResponse])
def list_institutions(
    q: Optional[str] = Query(default=None, description="Filter by institution name"),
    aggregator: Optional[str] = Query(default=None, description="Aggregator to search"),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Search an aggregator's institution catalogue."""
    try:
        institutions = service.list_institutions(q, aggregator=aggregator)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    return [InstitutionResponse.model_validate(i) for i in institutions]


@router.get(
    "/institutions/{institution_id}/credentials",
    response_model=list[CredentialFieldResponse],
)
def get_credential_fields(
    institution_id: str,
    aggregator: Optional[str] = Query(default=None),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Get the login fields to render for an institution."""
    try:
        fields = service.get_credential_fields(institution_id, aggregator=aggregator)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    return [CredentialFieldResponse.model_validate(f) for f in fields]


@router.post("/connect-token", response_model=ConnectTokenResponse)
def create_connect_token(
    body: ConnectTokenRequest,
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    try:
        token = service.create_connect_token(body.user_id, aggregator=body.aggregator)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    return ConnectTokenResponse(access_token=token)


# ----------------------------------------------------------------------
# Connections
# ----------------------------------------------------------------------


@router.post("/connections", response_model=SyncSummaryResponse, status_code=201)
def connect(
    body: ConnectRequest,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Submit credentials for an institution and drive the connection.

    Returns 201 with the outcome: synced, or the challenge the user must
    complete next. Rejected credentials are an outcome, not an HTTP error.

    Raises:
        HTTPException:
            - 422: Missing or malformed credential fields
            - 502: Aggregator unreachable or refused the request
    """
    try:
        handle = service.connect(
            db,
            user_id=body.user_id,
            institution_id=body.institution_id,
            credentials=body.credentials,
            product_filter=body.product_filter,
            resume_target=body.resume_target,
            aggregator=body.aggregator,
        )
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("connect") from e
    return summary_response(handle.summary)


@router.post("/connections/link", response_model=SyncSummaryResponse, status_code=201)
def link_connection(
    body: LinkRequest,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Register a connection created by the aggregator's connect widget.

    Raises:
        HTTPException:
            - 404: The aggregator does not know the connection id
            - 502: Aggregator unreachable or not configured
    """
    try:
        handle = service.link(
            db,
            user_id=body.user_id,
            connection_id=body.connection_id,
            aggregator=body.aggregator,
            resume_target=body.resume_target,
        )
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("link") from e
    return summary_response(handle.summary)


@router.get("/connections", response_model=list[ConnectionResponse])
def list_connections(
    user_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    return [connection_response(c) for c in ConnectionRegistry.list_connections(db, user_id)]


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
def get_connection(connection_id: str, db: Session = Depends(get_db)):
    """Get a connection by local id or aggregator id."""
    conn = ConnectionRegistry.find_connection(db, connection_id)
    if conn is None:
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    return connection_response(conn)


@router.post("/connections/{connection_id}/sync", response_model=SyncSummaryResponse)
def sync_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Poll the connection and reconcile its data when ready."""
    try:
        summary = service.sync(db, connection_id)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("sync") from e
    return summary_response(summary)


@router.post("/connections/{connection_id}/refresh", response_model=SyncSummaryResponse)
def refresh_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Ask the bank for fresh data, then sync."""
    try:
        summary = service.refresh(db, connection_id)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("refresh") from e
    return summary_response(summary)


@router.post("/connections/{connection_id}/mfa", response_model=SyncSummaryResponse)
def submit_challenge(
    connection_id: str,
    body: MFASubmitRequest,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Answer a pending MFA challenge.

    Raises:
        HTTPException:
            - 400: The aggregator rejected the value (retryable)
            - 404: Unknown connection
            - 409: No MFA challenge pending
            - 422: The value failed local validation
    """
    try:
        summary = service.submit_challenge(db, connection_id, body.value)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("challenge submission") from e
    return summary_response(summary)


@router.post("/oauth/callback", response_model=SyncSummaryResponse)
def oauth_callback(
    body: OAuthCallbackRequest,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Resume a connection once the user is back from the bank's OAuth page."""
    try:
        summary = service.resume_oauth(db, body.connection_id)
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("OAuth resume") from e
    return summary_response(summary)


@router.delete("/connections/{connection_id}", status_code=204)
def disconnect(
    connection_id: str,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Disconnect an institution, deleting its accounts and transactions."""
    try:
        service.disconnect(db, connection_id)
    except OpenFinanceError as e:
        raise _http_error(e) from e


# ----------------------------------------------------------------------
# Accounts & transactions
# ----------------------------------------------------------------------


@router.get(
    "/connections/{connection_id}/accounts",
    response_model=list[BankAccountResponse],
)
def list_accounts(connection_id: str, db: Session = Depends(get_db)):
    conn = ConnectionRegistry.find_connection(db, connection_id)
    if conn is None:
        raise HTTPException(status_code=404, detail=f"Connection {connection_id} not found")
    accounts = (
        db.query(BankAccount)
        .filter(BankAccount.connection_id == conn.id)
        .order_by(BankAccount.name)
        .all()
    )
    return [BankAccountResponse.model_validate(a) for a in accounts]


@router.get(
    "/accounts/{account_id}/transactions",
    response_model=list[BankTransactionResponse],
)
def list_transactions(
    account_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """List an account's transactions, newest first."""
    get_or_404(db, BankAccount, account_id, detail=f"Account {account_id} not found")
    txns = (
        db.query(BankTransaction)
        .filter(BankTransaction.account_id == account_id)
        .order_by(BankTransaction.date.desc(), BankTransaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [BankTransactionResponse.model_validate(t) for t in txns]


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


@router.post("/webhooks/pluggy", response_model=WebhookResponse)
def pluggy_webhook(
    payload: dict,
    db: Session = Depends(get_db),
    service: OpenFinanceService = Depends(get_open_finance_service),
):
    """Receive a Pluggy webhook event."""
    try:
        result = WebhookService(service).handle(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except OpenFinanceError as e:
        raise _http_error(e) from e
    except Exception as e:
        raise _unexpected("webhook handling") from e
    return WebhookResponse(
        event=result.event,
        handled=result.handled,
        local_id=result.local_id,
        detail=result.detail,
    )
