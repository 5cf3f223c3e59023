"""BankAccount model - a deposit or credit account discovered on a connection."""

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class BankAccount(Base):
    """An account reported by the aggregator for one connection.

    Only the reconciler creates or updates these rows. The aggregator's
    account id is unique per connection.
    """

    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_id", name="uix_account_connection_external"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # AccountKind value
    subtype = Column(String, nullable=True)  # e.g. CHECKING_ACCOUNT, CREDIT_CARD
    number = Column(String, nullable=True)
    balance = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="BRL")
    # Credit accounts only
    credit_limit = Column(Numeric(18, 2), nullable=True)
    available_credit_limit = Column(Numeric(18, 2), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    connection = relationship("Connection", back_populates="accounts")
    transactions = relationship(
        "BankTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
