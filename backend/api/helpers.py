"""Shared API helpers for route handlers.

Common query patterns and response builders used by the route files.
"""

from typing import TypeVar

from fastapi import HTTPException
from sqlalchemy.orm import Session

from database import Base
from models import Connection
from schemas import (
    ActionResponse,
    ChallengeFieldResponse,
    ConnectionResponse,
    SyncSummaryResponse,
)
from services.challenge_router import Action, Fail, OpenOAuth, PromptMFA
from services.open_finance_service import SyncSummary

T = TypeVar("T", bound=Base)


def get_or_404(db: Session, model: type[T], entity_id: str, detail: str = "Not found") -> T:
    """Fetch a single entity by primary key or raise 404.

    Args:
        db: Database session.
        model: SQLAlchemy model class.
        entity_id: Primary key value.
        detail: Error message for the 404 response.

    Returns:
        The entity instance.

    Raises:
        HTTPException: 404 if the entity doesn't exist.
    """
    entity = db.query(model).filter(model.id == entity_id).first()
    if not entity:
        raise HTTPException(status_code=404, detail=detail)
    return entity


def action_response(action: Action | None) -> ActionResponse | None:
    """Serialize a challenge router action."""
    if isinstance(action, OpenOAuth):
        return ActionResponse(kind="OPEN_OAUTH", url=action.url)
    if isinstance(action, PromptMFA):
        return ActionResponse(
            kind="PROMPT_MFA",
            field=ChallengeFieldResponse.model_validate(action.field_spec),
            connection_id=action.connection_id,
        )
    if isinstance(action, Fail):
        return ActionResponse(kind="FAIL", reason=action.reason)
    return None


def summary_response(summary: SyncSummary) -> SyncSummaryResponse:
    return SyncSummaryResponse(
        local_id=summary.local_id,
        connection_id=summary.connection_id,
        outcome=summary.outcome.value,
        status=summary.status.value,
        action=action_response(summary.action),
        accounts_upserted=summary.accounts_upserted,
        transactions_saved=summary.transactions_saved,
        transactions_skipped=summary.transactions_skipped,
        errors=summary.errors,
        execution_status=summary.execution_status.value if summary.execution_status else None,
        attempts=summary.attempts,
        message=summary.message,
    )


def connection_response(conn: Connection) -> ConnectionResponse:
    """Build a ConnectionResponse, exposing only the kind of a pending challenge."""
    challenge = conn.pending_challenge or {}
    return ConnectionResponse(
        id=conn.id,
        connection_id=conn.connection_id,
        aggregator=conn.aggregator,
        user_id=conn.user_id,
        institution_id=conn.institution_id,
        institution_name=conn.institution_name,
        status=conn.status,
        execution_status=conn.execution_status,
        pending_challenge_kind=challenge.get("kind"),
        error_message=conn.error_message,
        last_sync_at=conn.last_sync_at,
        created_at=conn.created_at,
    )
