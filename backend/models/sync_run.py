"""SyncRun model - records the outcome of each reconciliation."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class SyncRun(Base):
    """One reconciliation run for a connection.

    A connection accumulates one row per run, giving a local sync history
    independent of the aggregator.
    """

    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(
        String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    execution_status = Column(String, nullable=True)
    accounts_upserted = Column(Integer, default=0)
    transactions_saved = Column(Integer, default=0)
    transactions_skipped = Column(Integer, default=0)
    error_messages = Column(JSON, nullable=True)  # list[str], one per failed account
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    connection = relationship("Connection", back_populates="sync_runs")
