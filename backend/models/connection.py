"""Connection model - one linked institution per user, brokered by an aggregator."""

from sqlalchemy import CheckConstraint, Column, DateTime, JSON, String, Text
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class Connection(Base):
    """A user's link to one financial institution through an aggregator.

    ``id`` is the local registry key; ``connection_id`` is the identifier the
    aggregator issued (a Pluggy item id or a Belvo link id), and
    ``aggregator`` names which one. ``pending_challenge`` holds
    ``{"kind": "OAUTH" | "MFA", "payload": {...}}`` and is present exactly
    while ``status`` is WAITING_INPUT.
    """

    __tablename__ = "connections"
    __table_args__ = (
        CheckConstraint(
            "(status = 'WAITING_INPUT' AND pending_challenge IS NOT NULL) "
            "OR (status != 'WAITING_INPUT' AND pending_challenge IS NULL)",
            name="ck_connection_challenge_iff_waiting",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(String, unique=True, index=True, nullable=False)
    aggregator = Column(String, nullable=False, default="Pluggy", server_default="Pluggy")
    user_id = Column(String, index=True, nullable=False)
    institution_id = Column(String, nullable=False)
    institution_name = Column(String, nullable=True)
    status = Column(String, nullable=False)  # ConnectionStatus value
    execution_status = Column(String, nullable=True)  # ExecutionStatus value or unset
    pending_challenge = Column(JSON(none_as_null=True), nullable=True)
    error_message = Column(Text, nullable=True)  # aggregator's message, verbatim
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    accounts = relationship(
        "BankAccount",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    sync_runs = relationship(
        "SyncRun",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
