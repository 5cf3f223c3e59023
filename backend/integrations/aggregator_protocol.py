"""Aggregator protocol definitions.

This module defines the normalized data shapes every aggregator client maps
its wire format to, and the interface the connection and sync services
depend on. Pluggy and Belvo implement it; tests substitute a scripted
in-memory client.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from integrations.parsing_utils import parse_iso_datetime
from models.enums import (
    AccountKind,
    ConnectionStatus,
    ExecutionStatus,
    MovementKind,
    TransactionStatus,
)


@dataclass
class CredentialField:
    """One institution-specific login field, described at runtime.

    Institutions differ in what they ask for (tax id, agency, password,
    token...), so forms are rendered and validated from this description
    instead of per-institution code.
    """

    name: str
    label: str
    type: str = "text"
    placeholder: str | None = None
    validation: str | None = None  # regex the value must match
    validation_message: str | None = None
    optional: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "CredentialField":
        return cls(
            name=payload.get("name", ""),
            label=payload.get("label") or payload.get("name", ""),
            type=payload.get("type") or "text",
            placeholder=payload.get("placeholder"),
            validation=payload.get("validation"),
            validation_message=payload.get("validationMessage"),
            optional=bool(payload.get("optional", False)),
        )


@dataclass
class Institution:
    """A financial institution the aggregator can connect to."""

    id: str
    name: str
    credentials: list[CredentialField] = field(default_factory=list)
    image_url: str | None = None
    is_open_finance: bool = False
    products: list[str] = field(default_factory=list)


@dataclass
class ChallengeParameter:
    """A challenge the institution requires before granting data access.

    The aggregator reports OAuth hand-offs and one-time codes through the
    same structure; telling them apart is the challenge router's job.
    ``raw`` keeps the payload verbatim so it can be persisted and rebuilt.
    """

    name: str | None = None
    type: str | None = None
    label: str | None = None
    placeholder: str | None = None
    assistive_text: str | None = None
    validation: str | None = None
    validation_message: str | None = None
    optional: bool = False
    data: Any = None
    expires_at: datetime | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "ChallengeParameter":
        return cls(
            name=payload.get("name"),
            type=payload.get("type"),
            label=payload.get("label"),
            placeholder=payload.get("placeholder"),
            assistive_text=payload.get("assistiveText"),
            validation=payload.get("validation"),
            validation_message=payload.get("validationMessage"),
            optional=bool(payload.get("optional", False)),
            data=payload.get("data"),
            expires_at=parse_iso_datetime(payload.get("expiresAt")),
            raw=dict(payload),
        )


@dataclass
class AggregatorItem:
    """Normalized connection state as reported by the aggregator."""

    id: str
    status: ConnectionStatus
    execution_status: ExecutionStatus | None = None
    institution_id: str | None = None
    institution_name: str | None = None
    parameter: ChallengeParameter | None = None
    error_message: str | None = None
    error_code: str | None = None
    last_updated_at: datetime | None = None

    @property
    def has_challenge(self) -> bool:
        return self.parameter is not None


@dataclass
class AggregatorAccount:
    """Normalized account data from the aggregator."""

    id: str
    name: str
    kind: AccountKind
    balance: Decimal | None
    currency: str
    subtype: str | None = None
    number: str | None = None
    credit_limit: Decimal | None = None
    available_credit_limit: Decimal | None = None


@dataclass
class AggregatorTransaction:
    """Normalized transaction data from the aggregator.

    ``amount`` keeps the aggregator's sign; it is never reinterpreted here.
    """

    id: str
    account_id: str
    amount: Decimal
    date: date
    description: str | None
    movement: MovementKind
    status: TransactionStatus
    description_raw: str | None = None
    category: str | None = None
    currency: str | None = None


@dataclass
class DateRange:
    """Inclusive calendar date range for transaction fetches."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"DateRange start {self.start} is after end {self.end}")


class AggregatorClient(Protocol):
    """Protocol that aggregator clients must implement.

    Methods raise the exceptions in :mod:`integrations.exceptions` on
    transport or API failures.
    """

    @property
    def aggregator_name(self) -> str:
        """Return the aggregator name (e.g., 'Pluggy')."""
        ...

    def is_configured(self) -> bool:
        """Check if client credentials are present."""
        ...

    def list_institutions(self, query: str | None = None) -> list[Institution]:
        ...

    def get_institution(self, institution_id: str) -> Institution:
        """Fetch one institution, including its credential field list."""
        ...

    def create_connect_token(self, client_user_id: str | None = None) -> str:
        ...

    def create_item(
        self,
        institution_id: str,
        parameters: dict[str, str],
        products: list[str] | None = None,
        client_user_id: str | None = None,
    ) -> AggregatorItem:
        """Submit credentials and open a new connection."""
        ...

    def get_item(self, item_id: str) -> AggregatorItem:
        ...

    def update_item(self, item_id: str) -> AggregatorItem:
        """Ask the aggregator to collect fresh data from the institution."""
        ...

    def send_mfa(
        self,
        item_id: str,
        parameters: dict[str, str],
        challenge: ChallengeParameter | None = None,
    ) -> AggregatorItem:
        """Answer a pending challenge.

        ``challenge`` is the stored challenge being answered, for aggregators
        that need its session data echoed back.
        """
        ...

    def delete_item(self, item_id: str) -> None:
        ...

    def list_accounts(self, item_id: str) -> list[AggregatorAccount]:
        ...

    def list_transactions(
        self, account_id: str, date_range: DateRange, item_id: str | None = None
    ) -> list[AggregatorTransaction]:
        """Fetch an account's transactions. ``item_id`` names the owning connection."""
        ...
