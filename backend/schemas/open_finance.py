"""Pydantic schemas for the open finance API."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class CredentialFieldResponse(BaseModel):
    """One login field an institution asks for."""

    name: str
    label: str
    type: str
    placeholder: Optional[str] = None
    validation: Optional[str] = None
    validation_message: Optional[str] = None
    optional: bool = False

    model_config = {"from_attributes": True}


class InstitutionResponse(BaseModel):
    id: str
    name: str
    image_url: Optional[str] = None
    is_open_finance: bool = False
    products: list[str] = []
    credentials: list[CredentialFieldResponse] = []

    model_config = {"from_attributes": True}


class ConnectTokenRequest(BaseModel):
    user_id: Optional[str] = None
    aggregator: Optional[str] = None


class ConnectTokenResponse(BaseModel):
    access_token: str


class ConnectRequest(BaseModel):
    """Request body for opening a new connection."""

    user_id: str = Field(min_length=1)
    institution_id: str = Field(min_length=1)
    credentials: dict[str, str]
    product_filter: Optional[list[str]] = None
    resume_target: str = "connections"
    aggregator: Optional[str] = None


class LinkRequest(BaseModel):
    """Register a connection created by the aggregator's own widget."""

    user_id: str = Field(min_length=1)
    connection_id: str = Field(min_length=1)
    aggregator: Optional[str] = None
    resume_target: str = "connections"


class MFASubmitRequest(BaseModel):
    value: str


class OAuthCallbackRequest(BaseModel):
    """Body of the OAuth callback; without an id the stored resume target is used."""

    connection_id: Optional[str] = None


class ChallengeFieldResponse(BaseModel):
    name: Optional[str] = None
    label: Optional[str] = None
    type: Optional[str] = None
    placeholder: Optional[str] = None
    assistive_text: Optional[str] = None
    validation: Optional[str] = None
    validation_message: Optional[str] = None
    optional: bool = False
    data: Any = None
    expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ActionResponse(BaseModel):
    """What the client must do next for a connection waiting on the user."""

    kind: Literal["OPEN_OAUTH", "PROMPT_MFA", "FAIL"]
    url: Optional[str] = None
    field: Optional[ChallengeFieldResponse] = None
    connection_id: Optional[str] = None
    reason: Optional[str] = None


class SyncSummaryResponse(BaseModel):
    local_id: str
    connection_id: str
    outcome: str
    status: str
    action: Optional[ActionResponse] = None
    accounts_upserted: int = 0
    transactions_saved: int = 0
    transactions_skipped: int = 0
    errors: list[str] = []
    execution_status: Optional[str] = None
    attempts: int = 0
    message: Optional[str] = None


class ConnectionResponse(BaseModel):
    id: str
    connection_id: str
    aggregator: str
    user_id: str
    institution_id: str
    institution_name: Optional[str] = None
    status: str
    execution_status: Optional[str] = None
    pending_challenge_kind: Optional[str] = None
    error_message: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BankAccountResponse(BaseModel):
    id: str
    connection_id: str
    external_id: str
    name: str
    kind: str
    subtype: Optional[str] = None
    number: Optional[str] = None
    balance: Optional[Decimal] = None
    currency: str
    credit_limit: Optional[Decimal] = None
    available_credit_limit: Optional[Decimal] = None
    last_sync_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BankTransactionResponse(BaseModel):
    id: str
    account_id: str
    external_id: str
    amount: Decimal
    date: date
    description: Optional[str] = None
    description_raw: Optional[str] = None
    movement: str
    status: str
    category: Optional[str] = None
    currency: Optional[str] = None

    model_config = {"from_attributes": True}


class WebhookResponse(BaseModel):
    event: str
    handled: bool
    local_id: Optional[str] = None
    detail: Optional[str] = None
