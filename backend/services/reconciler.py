"""Sync reconciler - merges aggregator accounts and transactions into the database.

Reconciliation is idempotent: transactions are keyed by (account, external
id), so re-running it over the same data only counts duplicates as skipped.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorClient,
    AggregatorItem,
    AggregatorTransaction,
    DateRange,
)
from integrations.exceptions import AggregatorError
from models import BankAccount, BankTransaction, Connection, SyncRun
from models.enums import AccountKind, ExecutionStatus
from models.utils import utcnow
from services.connection_registry import ConnectionRegistry
from services.errors import AggregatorUnavailableError, ConnectionNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Counts for one reconciliation run.

    ``errors`` holds one message per account whose transactions could not
    be fetched; those accounts were skipped, the rest were saved.
    """

    accounts_upserted: int = 0
    transactions_saved: int = 0
    transactions_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    execution_status: ExecutionStatus | None = None
    sync_run_id: str | None = None


@dataclass
class _AccountFetch:
    account: BankAccount
    transactions: list[AggregatorTransaction] | None = None
    error: str | None = None


class SyncReconciler:
    """Pull accounts and transactions for a connection and merge them locally.

    Args:
        client: Aggregator client.
        max_workers: Accounts whose transactions are fetched at once. 1
            fetches sequentially. Database writes are always sequential.
    """

    def __init__(self, client: AggregatorClient, max_workers: int | None = None):
        self._client = client
        self._max_workers = max_workers or settings.SYNC_MAX_WORKERS

    def reconcile(
        self,
        db: Session,
        local_id: str,
        date_range: DateRange,
        item: AggregatorItem | None = None,
    ) -> ReconcileResult:
        """Reconcile one connection.

        Args:
            db: Database session. Changes are flushed, not committed.
            local_id: Registry id of the connection.
            date_range: Transactions to fetch, inclusive.
            item: The aggregator item just observed, if any. Its execution
                status is recorded; otherwise the item is fetched.

        Raises:
            ConnectionNotFoundError: If ``local_id`` is not registered.
            AggregatorUnavailableError: If the account list cannot be fetched.
        """
        conn = ConnectionRegistry.get_connection(db, local_id)
        if conn is None:
            raise ConnectionNotFoundError(local_id)

        run = SyncRun(connection_id=conn.id, started_at=utcnow())
        db.add(run)
        result = ReconcileResult()

        # Step A: accounts
        try:
            remote_accounts = self._client.list_accounts(conn.connection_id)
        except AggregatorError as e:
            run.error_messages = [f"accounts: {e}"]
            run.completed_at = utcnow()
            db.flush()
            logger.warning("Reconcile %s: could not list accounts: %s", conn.id, e)
            raise AggregatorUnavailableError(
                f"Could not fetch accounts: {e}", retriable=getattr(e, "retriable", True)
            ) from e

        accounts = self._upsert_accounts(db, conn, remote_accounts)
        result.accounts_upserted = len(accounts)

        # Step B: transactions, isolated per account
        for fetch in self._fetch_transactions(accounts, date_range, conn.connection_id):
            if fetch.error is not None:
                result.errors.append(f"{fetch.account.name}: {fetch.error}")
                continue
            saved, skipped = self._save_transactions(db, fetch.account, fetch.transactions)
            fetch.account.last_sync_at = utcnow()
            result.transactions_saved += saved
            result.transactions_skipped += skipped

        # Step C: connection bookkeeping
        result.execution_status = self._execution_status(conn, item)
        record = ConnectionRegistry.to_record(conn)
        record.last_sync_at = utcnow()
        if result.execution_status is not None:
            record.execution_status = result.execution_status
        ConnectionRegistry.upsert_connection(db, record)

        run.execution_status = (
            result.execution_status.value if result.execution_status else None
        )
        run.accounts_upserted = result.accounts_upserted
        run.transactions_saved = result.transactions_saved
        run.transactions_skipped = result.transactions_skipped
        run.error_messages = result.errors or None
        run.completed_at = record.last_sync_at
        db.flush()
        result.sync_run_id = run.id

        logger.info(
            "Reconciled connection %s: %d accounts, %d transactions saved, "
            "%d skipped, %d account errors (execution %s)",
            conn.id, result.accounts_upserted, result.transactions_saved,
            result.transactions_skipped, len(result.errors),
            result.execution_status.value if result.execution_status else "unset",
        )
        return result

    def _upsert_accounts(
        self,
        db: Session,
        conn: Connection,
        remote_accounts: list[AggregatorAccount],
    ) -> list[BankAccount]:
        """Insert new accounts and refresh balances on known ones."""
        existing = {
            a.external_id: a
            for a in db.query(BankAccount).filter(BankAccount.connection_id == conn.id).all()
        }
        upserted = []
        new_count = 0
        for remote in remote_accounts:
            account = existing.get(remote.id)
            if account is None:
                account = BankAccount(connection_id=conn.id, external_id=remote.id)
                db.add(account)
                existing[remote.id] = account
                new_count += 1

            account.name = remote.name
            account.kind = remote.kind.value
            account.subtype = remote.subtype
            account.number = remote.number
            account.balance = remote.balance
            account.currency = remote.currency
            if remote.kind is AccountKind.CREDIT:
                account.credit_limit = remote.credit_limit
                account.available_credit_limit = remote.available_credit_limit
            else:
                account.credit_limit = None
                account.available_credit_limit = None
            upserted.append(account)

        # Accounts must have ids before their transactions reference them
        db.flush()
        logger.info(
            "Connection %s: accounts upserted (%d new, %d existing)",
            conn.id, new_count, len(upserted) - new_count,
        )
        return upserted

    def _fetch_one(
        self, account: BankAccount, date_range: DateRange, item_id: str
    ) -> _AccountFetch:
        try:
            txns = self._client.list_transactions(
                account.external_id, date_range, item_id=item_id
            )
        except AggregatorError as e:
            logger.warning(
                "Transactions for account %s (%s) failed: %s",
                account.name, account.external_id, e,
            )
            return _AccountFetch(account=account, error=str(e))
        return _AccountFetch(account=account, transactions=txns)

    def _fetch_transactions(
        self, accounts: list[BankAccount], date_range: DateRange, item_id: str
    ) -> list[_AccountFetch]:
        """Fetch every account's transactions, concurrently when configured.

        Only network calls run in worker threads; results come back in
        account order.
        """
        if self._max_workers <= 1 or len(accounts) <= 1:
            return [self._fetch_one(a, date_range, item_id) for a in accounts]

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            return list(pool.map(lambda a: self._fetch_one(a, date_range, item_id), accounts))

    @staticmethod
    def _save_transactions(
        db: Session,
        account: BankAccount,
        remote_txns: list[AggregatorTransaction],
    ) -> tuple[int, int]:
        """Insert transactions not yet known for the account.

        Known transactions (already stored, or repeated within this batch)
        are skipped; a stored PENDING transaction that has since settled is
        updated in place.

        Returns:
            (saved, skipped)
        """
        known = {
            t.external_id: t
            for t in db.query(BankTransaction)
            .filter(BankTransaction.account_id == account.id)
            .all()
        }

        saved = 0
        skipped = 0
        for remote in remote_txns:
            stored = known.get(remote.id)
            if stored is not None:
                if stored.status != remote.status.value:
                    stored.status = remote.status.value
                    stored.amount = remote.amount
                    stored.date = remote.date
                skipped += 1
                continue

            txn = BankTransaction(
                account_id=account.id,
                external_id=remote.id,
                amount=remote.amount,
                date=remote.date,
                description=remote.description,
                description_raw=remote.description_raw,
                movement=remote.movement.value,
                status=remote.status.value,
                category=remote.category,
                currency=remote.currency or account.currency,
            )
            try:
                with db.begin_nested():
                    db.add(txn)
                    db.flush()
            except IntegrityError:
                # Stored by a concurrent run since we loaded the known ids
                logger.debug("Transaction %s already stored", remote.id)
                skipped += 1
                continue
            known[remote.id] = txn
            saved += 1

        if skipped:
            logger.debug(
                "Account %s: %d transactions saved, %d skipped",
                account.external_id, saved, skipped,
            )
        return saved, skipped

    def _execution_status(
        self, conn: Connection, item: AggregatorItem | None
    ) -> ExecutionStatus | None:
        if item is None:
            try:
                item = self._client.get_item(conn.connection_id)
            except AggregatorError as e:
                logger.warning(
                    "Could not read execution status for %s: %s", conn.connection_id, e
                )
                return None
        return item.execution_status
