"""Tests for SyncReconciler."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from integrations.aggregator_protocol import DateRange
from integrations.exceptions import AggregatorAPIError, AggregatorConnectionError
from models import BankAccount, BankTransaction, SyncRun
from models.enums import ConnectionStatus, ExecutionStatus, TransactionStatus
from services.errors import AggregatorUnavailableError, ConnectionNotFoundError
from services.reconciler import SyncReconciler
from tests.fixtures.mocks import (
    SAMPLE_ACCOUNTS,
    MockPluggyClient,
    make_item,
    make_transaction,
)

RANGE = DateRange(start=date(2026, 7, 1), end=date(2026, 10, 1))
UPDATED = make_item(ConnectionStatus.UPDATED, execution_status=ExecutionStatus.SUCCESS)


def _count(db, model) -> int:
    return db.query(model).count()


class TestReconcile:
    def test_first_run_saves_everything(self, db, connection):
        client = MockPluggyClient()

        result = SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        assert result.accounts_upserted == 2
        assert result.transactions_saved == 4
        assert result.transactions_skipped == 0
        assert result.errors == []
        assert result.execution_status == ExecutionStatus.SUCCESS
        assert _count(db, BankTransaction) == 4

    def test_second_run_is_idempotent(self, db, connection):
        client = MockPluggyClient()
        reconciler = SyncReconciler(client)

        reconciler.reconcile(db, connection.id, RANGE, item=UPDATED)
        result = reconciler.reconcile(db, connection.id, RANGE, item=UPDATED)

        assert result.transactions_saved == 0
        assert result.transactions_skipped == 4
        assert _count(db, BankAccount) == 2
        assert _count(db, BankTransaction) == 4

    def test_no_transactions(self, db, connection):
        client = MockPluggyClient(transactions={})
        reconciler = SyncReconciler(client)

        first = reconciler.reconcile(db, connection.id, RANGE, item=UPDATED)
        second = reconciler.reconcile(db, connection.id, RANGE, item=UPDATED)

        assert (first.transactions_saved, first.transactions_skipped) == (0, 0)
        assert (second.transactions_saved, second.transactions_skipped) == (0, 0)

    def test_duplicate_delivery_in_one_batch(self, db, connection):
        client = MockPluggyClient(
            accounts=[SAMPLE_ACCOUNTS[0]],
            transactions={
                "acc-checking": [
                    make_transaction("dup-1", amount="-10.00"),
                    make_transaction("dup-1", amount="-10.00"),
                ]
            },
        )

        result = SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        assert result.transactions_saved == 1
        assert result.transactions_skipped == 1
        assert db.query(BankTransaction).filter_by(external_id="dup-1").count() == 1

    def test_same_external_id_on_different_accounts(self, db, connection):
        client = MockPluggyClient(
            transactions={
                "acc-checking": [make_transaction("shared")],
                "acc-card": [make_transaction("shared", account_id="acc-card")],
            }
        )

        result = SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        assert result.transactions_saved == 2

    def test_updates_account_in_place(self, db, connection):
        reconciler = SyncReconciler(MockPluggyClient())
        reconciler.reconcile(db, connection.id, RANGE, item=UPDATED)

        changed = [replace(SAMPLE_ACCOUNTS[0], balance=Decimal("99.99")), SAMPLE_ACCOUNTS[1]]
        SyncReconciler(MockPluggyClient(accounts=changed)).reconcile(
            db, connection.id, RANGE, item=UPDATED
        )

        checking = db.query(BankAccount).filter_by(external_id="acc-checking").one()
        assert checking.balance == Decimal("99.99")
        assert _count(db, BankAccount) == 2

    def test_credit_limits_only_on_credit_accounts(self, db, connection):
        SyncReconciler(MockPluggyClient()).reconcile(db, connection.id, RANGE, item=UPDATED)

        card = db.query(BankAccount).filter_by(external_id="acc-card").one()
        checking = db.query(BankAccount).filter_by(external_id="acc-checking").one()
        assert card.credit_limit == Decimal("5000.00")
        assert card.available_credit_limit == Decimal("4169.90")
        assert checking.credit_limit is None

    def test_amount_sign_preserved(self, db, connection):
        SyncReconciler(MockPluggyClient()).reconcile(db, connection.id, RANGE, item=UPDATED)

        txn = db.query(BankTransaction).filter_by(external_id="txn-2").one()
        assert txn.amount == Decimal("-120.00")
        assert txn.movement == "DEBIT"

    def test_pending_transaction_settles_in_place(self, db, connection):
        SyncReconciler(MockPluggyClient()).reconcile(db, connection.id, RANGE, item=UPDATED)
        settled = MockPluggyClient(
            transactions={"acc-checking": [make_transaction("txn-3", amount="-35.90")]}
        )

        result = SyncReconciler(settled).reconcile(db, connection.id, RANGE, item=UPDATED)

        txn = db.query(BankTransaction).filter_by(external_id="txn-3").one()
        assert txn.status == TransactionStatus.SETTLED.value
        assert result.transactions_skipped == 1

    def test_failed_account_does_not_block_others(self, db, connection):
        client = MockPluggyClient(
            transactions={
                "acc-checking": AggregatorConnectionError("timeout", aggregator_name="Pluggy"),
                "acc-card": [make_transaction("txn-4", account_id="acc-card")],
            }
        )

        result = SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        assert result.accounts_upserted == 2
        assert result.transactions_saved == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Conta Corrente:")

    def test_concurrent_fetch_matches_sequential(self, db, connection):
        client = MockPluggyClient()

        result = SyncReconciler(client, max_workers=4).reconcile(
            db, connection.id, RANGE, item=UPDATED
        )

        assert result.transactions_saved == 4
        assert client.call_count("list_transactions") == 2

    def test_records_connection_bookkeeping(self, db, connection):
        partial = make_item(ConnectionStatus.UPDATED, execution_status=ExecutionStatus.PARTIAL_SUCCESS)

        SyncReconciler(MockPluggyClient()).reconcile(db, connection.id, RANGE, item=partial)

        assert connection.last_sync_at is not None
        assert connection.execution_status == "PARTIAL_SUCCESS"
        assert connection.status == "UPDATED"

    def test_fetches_execution_status_when_no_item_given(self, db, connection):
        client = MockPluggyClient(items=[UPDATED])

        result = SyncReconciler(client).reconcile(db, connection.id, RANGE)

        assert result.execution_status == ExecutionStatus.SUCCESS
        assert client.call_count("get_item") == 1

    def test_writes_sync_run(self, db, connection):
        result = SyncReconciler(MockPluggyClient()).reconcile(
            db, connection.id, RANGE, item=UPDATED
        )

        run = db.query(SyncRun).one()
        assert run.id == result.sync_run_id
        assert run.transactions_saved == 4
        assert run.execution_status == "SUCCESS"
        assert run.completed_at is not None

    def test_account_list_failure_raises(self, db, connection):
        client = MockPluggyClient(
            accounts=AggregatorAPIError("boom", aggregator_name="Pluggy", status_code=500)
        )

        with pytest.raises(AggregatorUnavailableError):
            SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        run = db.query(SyncRun).one()
        assert run.error_messages == ["accounts: boom"]

    def test_unknown_connection(self, db):
        with pytest.raises(ConnectionNotFoundError):
            SyncReconciler(MockPluggyClient()).reconcile(db, "missing", RANGE)

    def test_transactions_requested_with_date_range(self, db, connection):
        client = MockPluggyClient()
        SyncReconciler(client).reconcile(db, connection.id, RANGE, item=UPDATED)

        calls = [c for c in client.calls if c[0] == "list_transactions"]
        assert {c[1] for c in calls} == {"acc-checking", "acc-card"}
        assert all(c[2] == RANGE for c in calls)
