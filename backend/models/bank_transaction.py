"""BankTransaction model - a money movement on a bank account."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class BankTransaction(Base):
    """A transaction as reported by the aggregator.

    Deduplication key is (account_id, external_id): re-syncing the same
    data never creates a second row. ``amount`` is stored exactly as the
    aggregator reports it (signed, positive = money in).
    """

    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "external_id", name="uix_transaction_account_external"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(
        String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_id = Column(String, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    date = Column(Date, nullable=False)
    description = Column(String, nullable=True)
    description_raw = Column(String, nullable=True)
    movement = Column(String, nullable=False)  # MovementKind value
    status = Column(String, nullable=False)  # TransactionStatus value
    category = Column(String, nullable=True)
    currency = Column(String(3), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    account = relationship("BankAccount", back_populates="transactions")
