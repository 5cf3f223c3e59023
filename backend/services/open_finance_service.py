"""Open finance service - the connect and sync operations exposed to clients.

Ties the pieces together:

    credentials -> poll -> route challenge -> (OAuth | MFA) -> poll -> reconcile

Outcomes that need the user (a challenge, rejected credentials, a slow bank)
are returned as a :class:`SyncSummary`, not raised. Only input errors,
unknown connections and an unreachable aggregator raise, always as
:mod:`services.errors` types.

Each operation commits as it reaches a milestone (connection registered,
status recorded, data reconciled), so a later failure never loses the
status already observed.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import (
    AggregatorClient,
    AggregatorItem,
    CredentialField,
    DateRange,
    Institution,
)
from integrations.aggregator_registry import AggregatorRegistry, get_aggregator_registry
from integrations.exceptions import AggregatorAPIError, AggregatorError
from models import Connection
from models.enums import ConnectionStatus, ExecutionStatus
from services.challenge_router import Action, Fail, OpenOAuth, PromptMFA, route_challenge
from services.connection_registry import ConnectionRecord, ConnectionRegistry
from services.credential_service import CredentialService
from services.errors import AggregatorUnavailableError, ConnectionNotFoundError
from services.mfa_service import MFAContinuation
from services.oauth_service import OAuthContinuation, log_only_opener
from services.reconciler import SyncReconciler
from services.status_poller import StatusPoller, TimedOut, is_settled

logger = logging.getLogger(__name__)

DEFAULT_RESUME_TARGET = "connections"

STILL_PROCESSING_MESSAGE = "The bank is still processing. Refresh again in a few moments."
PARTIAL_MESSAGE = "Some data may be incomplete. Try syncing again later."
UNREACHABLE_MESSAGE = "The bank connection could not be checked right now. Try again later."


class SyncOutcome(str, Enum):
    SYNCED = "SYNCED"
    PARTIAL = "PARTIAL"  # reconciled, but some data may be missing
    TIMED_OUT = "TIMED_OUT"  # still UPDATING when polling gave up
    OAUTH_REQUIRED = "OAUTH_REQUIRED"
    MFA_REQUIRED = "MFA_REQUIRED"
    CHALLENGE_FAILED = "CHALLENGE_FAILED"  # challenge could not be acted on
    CREDENTIALS_REJECTED = "CREDENTIALS_REJECTED"  # LOGIN_ERROR / OUTDATED


@dataclass
class SyncSummary:
    """What happened to a connection and what the user should do next.

    ``message`` is user-facing. For rejected credentials it is the
    aggregator's message, unchanged.
    """

    local_id: str
    connection_id: str
    outcome: SyncOutcome
    status: ConnectionStatus
    action: Action | None = None
    accounts_upserted: int = 0
    transactions_saved: int = 0
    transactions_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    execution_status: ExecutionStatus | None = None
    attempts: int = 0
    message: str | None = None


@dataclass
class ConnectionHandle:
    """Result of :meth:`OpenFinanceService.connect`."""

    local_id: str
    connection_id: str
    summary: SyncSummary

    @property
    def status(self) -> ConnectionStatus:
        return self.summary.status

    @property
    def action(self) -> Action | None:
        return self.summary.action


def _unavailable(e: AggregatorError, what: str) -> AggregatorUnavailableError:
    return AggregatorUnavailableError(f"{what}: {e}", retriable=getattr(e, "retriable", True))


class OpenFinanceService:
    """Connect, sync and challenge operations across the configured aggregators.

    Every connection remembers the aggregator that brokered it and is always
    driven through that aggregator's client.

    Args:
        client: A single aggregator client to use. When given it becomes the
            default aggregator.
        registry: Aggregator registry. Defaults to every aggregator
            configured in settings, built on first use.
        sleep: Sleep function for the status poller.
        opener: Receives OAuth URLs. Defaults to logging them, since in a
            server the client app opens the URL itself.
    """

    def __init__(
        self,
        client: AggregatorClient | None = None,
        *,
        registry: AggregatorRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        opener: Callable[[str], object] = log_only_opener,
        max_attempts: int | None = None,
        interval_ms: int | None = None,
        lookback_days: int | None = None,
    ):
        self._registry = registry
        self._default_aggregator = None
        if client is not None:
            if self._registry is None:
                self._registry = AggregatorRegistry()
            self._registry.register_aggregator(client)
            self._default_aggregator = client.aggregator_name
        self._sleep = sleep
        self._opener = opener
        self.max_attempts = max_attempts or settings.POLL_MAX_ATTEMPTS
        self.interval_ms = settings.POLL_INTERVAL_MS if interval_ms is None else interval_ms
        self.lookback_days = lookback_days or settings.SYNC_LOOKBACK_DAYS

    @property
    def registry(self) -> AggregatorRegistry:
        if self._registry is None:
            self._registry = get_aggregator_registry()
        return self._registry

    @property
    def default_aggregator(self) -> str:
        return self._default_aggregator or settings.DEFAULT_AGGREGATOR

    def client_for(self, aggregator: str | None = None) -> AggregatorClient:
        """Resolve an aggregator name to its client.

        Raises:
            AggregatorUnavailableError: If that aggregator is not configured.
        """
        name = aggregator or self.default_aggregator
        try:
            return self.registry.get_aggregator(name)
        except ValueError as e:
            raise AggregatorUnavailableError(str(e), retriable=False) from e

    @property
    def client(self) -> AggregatorClient:
        """The default aggregator's client."""
        return self.client_for()

    def poller_for(self, conn: Connection) -> StatusPoller:
        return StatusPoller(self.client_for(conn.aggregator), sleep=self._sleep)

    @property
    def oauth(self) -> OAuthContinuation:
        return OAuthContinuation(opener=self._opener)

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def list_aggregators(self) -> list[str]:
        return self.registry.list_aggregators()

    def list_institutions(
        self, query: str | None = None, aggregator: str | None = None
    ) -> list[Institution]:
        client = self.client_for(aggregator)
        try:
            return client.list_institutions(query)
        except AggregatorError as e:
            raise _unavailable(e, "Could not list institutions") from e

    def get_credential_fields(
        self, institution_id: str, aggregator: str | None = None
    ) -> list[CredentialField]:
        return CredentialService(self.client_for(aggregator)).get_fields(institution_id)

    def create_connect_token(
        self, user_id: str | None = None, aggregator: str | None = None
    ) -> str:
        client = self.client_for(aggregator)
        try:
            return client.create_connect_token(user_id)
        except AggregatorError as e:
            raise _unavailable(e, "Could not create connect token") from e

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    def connect(
        self,
        db: Session,
        user_id: str,
        institution_id: str,
        credentials: dict[str, str],
        fields: list[CredentialField] | None = None,
        product_filter: list[str] | None = None,
        resume_target: str = DEFAULT_RESUME_TARGET,
        aggregator: str | None = None,
    ) -> ConnectionHandle:
        """Submit credentials and drive the new connection as far as it goes.

        Raises:
            LocalValidationError: Missing or malformed credential fields.
            AggregatorUnavailableError: The connection could not be created.
        """
        client = self.client_for(aggregator)
        item = CredentialService(client).submit(
            institution_id,
            credentials,
            fields=fields,
            product_filter=product_filter,
            client_user_id=user_id,
        )

        conn = ConnectionRegistry.upsert_connection(
            db,
            ConnectionRecord(
                connection_id=item.id,
                user_id=user_id,
                institution_id=item.institution_id or institution_id,
                institution_name=item.institution_name,
                status=ConnectionStatus.CREATED,
                aggregator=client.aggregator_name,
            ),
        )
        ConnectionRegistry.record_item(db, conn, item)
        db.commit()

        summary = self._advance(db, conn, item, resume_target=resume_target)
        return ConnectionHandle(
            local_id=conn.id, connection_id=conn.connection_id, summary=summary
        )

    def link(
        self,
        db: Session,
        user_id: str,
        connection_id: str,
        aggregator: str | None = None,
        resume_target: str = DEFAULT_RESUME_TARGET,
    ) -> ConnectionHandle:
        """Register a connection the aggregator's own widget created.

        The connection is read back from the aggregator and then driven like
        one created by :meth:`connect`. Linking an already registered
        connection syncs it again.

        Raises:
            ConnectionNotFoundError: The aggregator does not know the id.
            AggregatorUnavailableError: The aggregator could not be reached.
        """
        client = self.client_for(aggregator)
        try:
            item = client.get_item(connection_id)
        except AggregatorAPIError as e:
            if e.is_not_found:
                raise ConnectionNotFoundError(connection_id) from e
            raise _unavailable(e, "Could not read the new connection") from e
        except AggregatorError as e:
            raise _unavailable(e, "Could not read the new connection") from e

        conn = ConnectionRegistry.get_by_connection_id(db, item.id)
        if conn is None:
            conn = ConnectionRegistry.upsert_connection(
                db,
                ConnectionRecord(
                    connection_id=item.id,
                    user_id=user_id,
                    institution_id=item.institution_id or "",
                    institution_name=item.institution_name,
                    status=ConnectionStatus.CREATED,
                    aggregator=client.aggregator_name,
                ),
            )
            logger.info(
                "Linked %s connection %s for user %s",
                client.aggregator_name, item.id, user_id,
            )
        ConnectionRegistry.record_item(db, conn, item)
        db.commit()

        summary = self._advance(db, conn, item, resume_target=resume_target)
        return ConnectionHandle(
            local_id=conn.id, connection_id=conn.connection_id, summary=summary
        )

    def sync(
        self,
        db: Session,
        identifier: str,
        resume_target: str | None = None,
        *,
        start_oauth: bool = True,
    ) -> SyncSummary:
        """Manual refresh: poll the connection, then reconcile when ready.

        ``identifier`` is a local id or the aggregator's connection id.
        Without ``resume_target`` an OAuth hand-off reuses the target already
        stored for this connection. With ``start_oauth`` off an OAuth
        challenge is reported but the stored resume context is not touched.
        """
        conn = self._require(db, identifier)
        return self._advance(
            db, conn, None, resume_target=resume_target, start_oauth=start_oauth
        )

    def refresh(
        self,
        db: Session,
        identifier: str,
        resume_target: str | None = None,
        *,
        start_oauth: bool = True,
    ) -> SyncSummary:
        """Ask the aggregator to collect fresh data from the bank, then sync."""
        conn = self._require(db, identifier)
        client = self.client_for(conn.aggregator)
        try:
            item = client.update_item(conn.connection_id)
        except AggregatorError as e:
            raise _unavailable(e, "Could not request an update") from e
        ConnectionRegistry.record_item(db, conn, item)
        db.commit()
        logger.info("Update requested for connection %s", conn.id)
        return self._advance(
            db, conn, None, resume_target=resume_target, start_oauth=start_oauth
        )

    def resume_oauth(self, db: Session, identifier: str | None = None) -> SyncSummary:
        """Entry point for the OAuth callback.

        Without ``identifier`` the connection is taken from the stored
        resume context. The context is cleared once used.

        Raises:
            ConnectionNotFoundError: If no connection matches.
        """
        context = OAuthContinuation.peek(db)
        if identifier is None:
            if context is None:
                raise ConnectionNotFoundError("<oauth resume target>")
            identifier = context.local_id or context.connection_id

        conn = self._require(db, identifier)
        resume_target = DEFAULT_RESUME_TARGET
        if context is not None and conn.connection_id == context.connection_id:
            OAuthContinuation.consume(db)
            resume_target = context.target or DEFAULT_RESUME_TARGET

        logger.info("Resuming connection %s after OAuth", conn.id)
        return self._advance(db, conn, None, resume_target=resume_target)

    def submit_challenge(self, db: Session, identifier: str, value: str) -> SyncSummary:
        """Answer a pending MFA challenge, then keep polling.

        Raises:
            ChallengeStateError: No MFA challenge is pending.
            LocalValidationError: The value failed local validation.
            ChallengeRejectedError: The aggregator refused the value.
            AggregatorUnavailableError: The aggregator could not be reached.
        """
        conn = self._require(db, identifier)
        item = MFAContinuation(self.client_for(conn.aggregator)).submit(db, conn, value)
        db.commit()
        return self._advance(db, conn, item)

    def disconnect(self, db: Session, local_id: str) -> None:
        """Remove a connection remotely and locally.

        A failed remote delete is logged and the local delete still happens,
        so the user is never stuck with a connection they cannot remove.
        """
        conn = ConnectionRegistry.get_connection(db, local_id)
        if conn is None:
            raise ConnectionNotFoundError(local_id)

        try:
            self.client_for(conn.aggregator).delete_item(conn.connection_id)
        except (AggregatorError, AggregatorUnavailableError) as e:
            logger.warning(
                "Remote delete of %s failed, removing locally anyway: %s",
                conn.connection_id, e,
            )

        context = OAuthContinuation.peek(db)
        if context is not None and context.local_id == conn.id:
            OAuthContinuation.consume(db)

        ConnectionRegistry.delete_connection(db, local_id)
        db.commit()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def date_range(self) -> DateRange:
        today = date.today()
        return DateRange(start=today - timedelta(days=self.lookback_days), end=today)

    def _require(self, db: Session, identifier: str) -> Connection:
        conn = ConnectionRegistry.find_connection(db, identifier)
        if conn is None:
            raise ConnectionNotFoundError(identifier)
        return conn

    def _advance(
        self,
        db: Session,
        conn: Connection,
        item: AggregatorItem | None,
        resume_target: str | None = None,
        start_oauth: bool = True,
    ) -> SyncSummary:
        """Poll unless ``item`` is already settled, then act on its status."""
        attempts = 0
        if item is None or not is_settled(item):
            result = self.poller_for(conn).poll(
                conn.connection_id, self.max_attempts, self.interval_ms
            )
            attempts = result.attempts
            if isinstance(result, TimedOut):
                return self._timed_out(db, conn, result)
            item = result.item

        ConnectionRegistry.record_item(db, conn, item)
        db.commit()

        summary = SyncSummary(
            local_id=conn.id,
            connection_id=conn.connection_id,
            outcome=SyncOutcome.SYNCED,
            status=item.status,
            execution_status=item.execution_status,
            attempts=attempts,
        )

        if item.status.is_fatal:
            summary.outcome = SyncOutcome.CREDENTIALS_REJECTED
            summary.message = item.error_message
            logger.info(
                "Connection %s rejected by institution: %s (%s)",
                conn.id, item.status.value, item.error_message,
            )
            return summary

        if item.status == ConnectionStatus.WAITING_INPUT:
            return self._challenge(db, conn, item, summary, resume_target, start_oauth)

        return self._reconcile(db, conn, item, summary)

    def _timed_out(self, db: Session, conn: Connection, result: TimedOut) -> SyncSummary:
        """Leave the connection at UPDATING; the user may refresh later.

        When no poll reached the aggregator nothing new was observed, so the
        stored status and any pending challenge are kept as they are.
        """
        if result.last_status is None:
            logger.warning(
                "Connection %s could not be polled; keeping status %s",
                conn.id, conn.status,
            )
            return SyncSummary(
                local_id=conn.id,
                connection_id=conn.connection_id,
                outcome=SyncOutcome.TIMED_OUT,
                status=ConnectionStatus(conn.status),
                attempts=result.attempts,
                message=UNREACHABLE_MESSAGE,
            )

        if conn.status != ConnectionStatus.UPDATING.value:
            ConnectionRegistry.record_status(db, conn, ConnectionStatus.UPDATING)
            db.commit()
        return SyncSummary(
            local_id=conn.id,
            connection_id=conn.connection_id,
            outcome=SyncOutcome.TIMED_OUT,
            status=ConnectionStatus.UPDATING,
            attempts=result.attempts,
            message=STILL_PROCESSING_MESSAGE,
        )

    def _challenge(
        self,
        db: Session,
        conn: Connection,
        item: AggregatorItem,
        summary: SyncSummary,
        resume_target: str | None,
        start_oauth: bool = True,
    ) -> SyncSummary:
        action = route_challenge(conn.connection_id, item.parameter)
        summary.action = action
        if isinstance(action, OpenOAuth):
            summary.outcome = SyncOutcome.OAUTH_REQUIRED
            if start_oauth:
                target = resume_target or self._stored_target(db, conn)
                self.oauth.begin(db, action.url, target, conn)
            else:
                logger.info("Connection %s: OAuth left for the user to start", conn.id)
        elif isinstance(action, PromptMFA):
            summary.outcome = SyncOutcome.MFA_REQUIRED
        elif isinstance(action, Fail):
            summary.outcome = SyncOutcome.CHALLENGE_FAILED
            summary.message = action.reason
        logger.info("Connection %s needs input: %s", conn.id, summary.outcome.value)
        return summary

    @staticmethod
    def _stored_target(db: Session, conn: Connection) -> str:
        """The resume target already stored for ``conn``, else the default."""
        context = OAuthContinuation.peek(db)
        if context is not None and context.connection_id == conn.connection_id and context.target:
            return context.target
        return DEFAULT_RESUME_TARGET

    def _reconcile(
        self,
        db: Session,
        conn: Connection,
        item: AggregatorItem,
        summary: SyncSummary,
    ) -> SyncSummary:
        try:
            result = SyncReconciler(self.client_for(conn.aggregator)).reconcile(
                db, conn.id, self.date_range(), item=item
            )
        except AggregatorUnavailableError:
            # Keep the failed sync run
            db.commit()
            raise
        db.commit()

        summary.accounts_upserted = result.accounts_upserted
        summary.transactions_saved = result.transactions_saved
        summary.transactions_skipped = result.transactions_skipped
        summary.errors = result.errors
        summary.execution_status = result.execution_status
        if result.errors or result.execution_status in (
            ExecutionStatus.PARTIAL_SUCCESS,
            ExecutionStatus.ERROR,
        ):
            summary.outcome = SyncOutcome.PARTIAL
            summary.message = PARTIAL_MESSAGE
        return summary
