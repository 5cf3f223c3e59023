"""Connection registry - local persisted record of each linked institution.

Pure persistence: nothing here talks to the aggregator. Writers replace the
status fields of a connection as a whole, so concurrent upserts for the same
connection resolve to the last writer.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from integrations.aggregator_protocol import AggregatorItem
from models import Connection, ConnectionStatus, ExecutionStatus
from services.challenge_router import challenge_record
from services.connection_state import transition_path

logger = logging.getLogger(__name__)


@dataclass
class ConnectionRecord:
    """The full writable state of a connection.

    ``local_id`` is None for a connection not yet registered. ``aggregator``
    is fixed when the row is inserted; unset means the default (Pluggy).
    """

    connection_id: str
    user_id: str
    institution_id: str
    status: ConnectionStatus
    institution_name: str | None = None
    execution_status: ExecutionStatus | None = None
    pending_challenge: dict | None = None
    error_message: str | None = None
    last_sync_at: datetime | None = None
    local_id: str | None = None
    aggregator: str | None = None


def check_challenge_invariant(
    status: ConnectionStatus, pending_challenge: dict | None
) -> None:
    """A challenge is stored exactly while the connection waits for input."""
    waiting = status == ConnectionStatus.WAITING_INPUT
    if waiting and pending_challenge is None:
        raise ValueError("WAITING_INPUT connection requires a pending challenge")
    if not waiting and pending_challenge is not None:
        raise ValueError(f"{status.value} connection cannot hold a pending challenge")


class ConnectionRegistry:
    """CRUD for :class:`Connection` rows."""

    @staticmethod
    def get_connection(db: Session, local_id: str) -> Connection | None:
        return db.query(Connection).filter(Connection.id == local_id).first()

    @staticmethod
    def get_by_connection_id(db: Session, connection_id: str) -> Connection | None:
        """Look up a connection by the aggregator-issued id."""
        return (
            db.query(Connection)
            .filter(Connection.connection_id == connection_id)
            .first()
        )

    @staticmethod
    def find_connection(db: Session, identifier: str) -> Connection | None:
        """Resolve either a local id or an aggregator id."""
        return ConnectionRegistry.get_connection(
            db, identifier
        ) or ConnectionRegistry.get_by_connection_id(db, identifier)

    @staticmethod
    def list_connections(db: Session, user_id: str | None = None) -> list[Connection]:
        """List connections, newest first, optionally for a single user."""
        query = db.query(Connection)
        if user_id is not None:
            query = query.filter(Connection.user_id == user_id)
        return query.order_by(Connection.created_at.desc()).all()

    @staticmethod
    def upsert_connection(db: Session, record: ConnectionRecord) -> Connection:
        """Insert or whole-record replace a connection.

        Rows are matched by ``local_id`` when given, else by
        ``connection_id``. New rows start at CREATED and move to the
        record's status through the state machine.

        Raises:
            ValueError: If the record breaks the challenge invariant.
            InvalidStatusTransition: If the status change is not allowed.
        """
        check_challenge_invariant(record.status, record.pending_challenge)

        if record.local_id is not None:
            conn = ConnectionRegistry.get_connection(db, record.local_id)
        else:
            conn = ConnectionRegistry.get_by_connection_id(db, record.connection_id)

        if conn is None:
            conn = Connection(
                connection_id=record.connection_id,
                user_id=record.user_id,
                institution_id=record.institution_id,
                status=ConnectionStatus.CREATED.value,
            )
            if record.aggregator:
                conn.aggregator = record.aggregator
            if record.local_id is not None:
                conn.id = record.local_id
            ConnectionRegistry._apply(conn, record)
            try:
                with db.begin_nested():
                    db.add(conn)
                    db.flush()
            except IntegrityError:
                # Another writer registered the same aggregator id first;
                # replace its fields instead.
                conn = ConnectionRegistry.get_by_connection_id(db, record.connection_id)
                if conn is None:
                    raise
                ConnectionRegistry._apply(conn, record)
                db.flush()
                logger.info("Updated connection %s (concurrent insert)", conn.id)
            else:
                logger.info(
                    "Registered connection %s (aggregator id %s, status %s)",
                    conn.id, conn.connection_id, conn.status,
                )
            return conn

        ConnectionRegistry._apply(conn, record)
        db.flush()
        logger.debug("Upserted connection %s (status %s)", conn.id, conn.status)
        return conn

    @staticmethod
    def record_status(
        db: Session,
        conn: Connection,
        status: ConnectionStatus,
        *,
        pending_challenge: dict | None = None,
        error_message: str | None = None,
        execution_status: ExecutionStatus | None = None,
    ) -> Connection:
        """Record a newly observed status on an existing connection.

        Clears any stale error message and challenge unless new ones are
        given. ``execution_status`` is only replaced when provided.
        """
        record = ConnectionRegistry.to_record(conn)
        record.status = status
        record.pending_challenge = pending_challenge
        record.error_message = error_message
        if execution_status is not None:
            record.execution_status = execution_status
        return ConnectionRegistry.upsert_connection(db, record)

    @staticmethod
    def record_item(db: Session, conn: Connection, item: AggregatorItem) -> Connection:
        """Record the status reported on an aggregator item.

        The aggregator's error message is kept only for fatal statuses. A
        WAITING_INPUT item whose challenge is not published yet is still
        being processed and is recorded as UPDATING.
        """
        status = item.status
        pending_challenge = None
        if status == ConnectionStatus.WAITING_INPUT:
            if item.parameter is None:
                status = ConnectionStatus.UPDATING
            else:
                pending_challenge = challenge_record(item.parameter)

        if item.institution_name and not conn.institution_name:
            conn.institution_name = item.institution_name

        return ConnectionRegistry.record_status(
            db,
            conn,
            status,
            pending_challenge=pending_challenge,
            error_message=item.error_message if status.is_fatal else None,
            execution_status=item.execution_status,
        )

    @staticmethod
    def delete_connection(db: Session, local_id: str) -> bool:
        """Delete a connection and, by cascade, its accounts and transactions.

        Returns:
            True if deleted, False if not found.
        """
        conn = ConnectionRegistry.get_connection(db, local_id)
        if conn is None:
            return False
        db.delete(conn)
        db.flush()
        logger.info("Deleted connection %s (aggregator id %s)", local_id, conn.connection_id)
        return True

    @staticmethod
    def to_record(conn: Connection) -> ConnectionRecord:
        return ConnectionRecord(
            local_id=conn.id,
            connection_id=conn.connection_id,
            user_id=conn.user_id,
            institution_id=conn.institution_id,
            institution_name=conn.institution_name,
            status=ConnectionStatus(conn.status),
            execution_status=(
                ExecutionStatus(conn.execution_status) if conn.execution_status else None
            ),
            pending_challenge=conn.pending_challenge,
            error_message=conn.error_message,
            last_sync_at=conn.last_sync_at,
            aggregator=conn.aggregator,
        )

    @staticmethod
    def _apply(conn: Connection, record: ConnectionRecord) -> None:
        current = ConnectionStatus(conn.status)
        path = transition_path(current, record.status)
        if len(path) > 1:
            logger.debug(
                "Connection %s: %s -> %s",
                record.connection_id, current.value,
                " -> ".join(s.value for s in path),
            )

        conn.user_id = record.user_id
        conn.institution_id = record.institution_id
        conn.institution_name = record.institution_name
        conn.status = record.status.value
        conn.execution_status = (
            record.execution_status.value if record.execution_status else None
        )
        conn.pending_challenge = record.pending_challenge
        conn.error_message = record.error_message
        conn.last_sync_at = record.last_sync_at
