"""Tests for the scheduled sync script."""

from unittest.mock import MagicMock, patch

from integrations.exceptions import AggregatorAPIError
from models.enums import ConnectionStatus, ExecutionStatus
from scripts import sync_connections
from services.oauth_service import OAuthContinuation
from tests.fixtures import create_connection, make_service
from tests.fixtures.mocks import OAUTH_PARAMETER, MockPluggyClient, make_item

UPDATED = make_item(ConnectionStatus.UPDATED, execution_status=ExecutionStatus.SUCCESS)


class TestRun:
    def test_syncs_every_connection(self, db):
        create_connection(db, connection_id="item-1", user_id="alice")
        create_connection(db, connection_id="item-2", user_id="bob")
        client = MockPluggyClient(items=[UPDATED])

        failures = sync_connections.run(db, make_service(client))

        assert failures == 0
        assert client.call_count("list_accounts") == 2

    def test_filters_by_user(self, db):
        create_connection(db, connection_id="item-1", user_id="alice")
        create_connection(db, connection_id="item-2", user_id="bob")
        client = MockPluggyClient(items=[UPDATED])

        sync_connections.run(db, make_service(client), user_id="bob")

        assert [c for c in client.calls if c[0] == "list_accounts"] == [
            ("list_accounts", "item-2")
        ]

    def test_refresh_requests_update(self, db, connection):
        client = MockPluggyClient(items=[UPDATED])
        sync_connections.run(db, make_service(client), refresh=True)
        assert client.call_count("update_item") == 1

    def test_counts_failures_and_continues(self, db):
        create_connection(db, connection_id="item-1")
        create_connection(db, connection_id="item-2")
        client = MockPluggyClient(
            items=[UPDATED],
            accounts=AggregatorAPIError("boom", aggregator_name="Pluggy", status_code=500),
        )

        failures = sync_connections.run(db, make_service(client))

        assert failures == 2
        assert client.call_count("list_accounts") == 2

    def test_outcomes_needing_user_are_not_failures(self, db, connection):
        client = MockPluggyClient(
            items=[make_item(ConnectionStatus.LOGIN_ERROR, error_message="invalid password")]
        )
        assert sync_connections.run(db, make_service(client)) == 0

    def test_oauth_waiting_connections_leave_resume_context_alone(self, db, oauth_connection):
        OAuthContinuation(opener=lambda url: None).begin(
            db, "https://bank.example/auth", "accounts/A", oauth_connection
        )
        create_connection(
            db,
            status=ConnectionStatus.WAITING_INPUT,
            connection_id="item-2",
            pending_challenge={"kind": "OAUTH", "payload": OAUTH_PARAMETER},
        )
        opened = []
        client = MockPluggyClient(
            items=[make_item(ConnectionStatus.WAITING_INPUT, parameter=OAUTH_PARAMETER)]
        )
        service = make_service(client, opener=opened.append)

        assert sync_connections.run(db, service) == 0

        context = OAuthContinuation.peek(db)
        assert context.target == "accounts/A"
        assert context.connection_id == "item-1"
        assert context.local_id == oauth_connection.id
        assert opened == []


class TestMain:
    def test_exit_code_reflects_failures(self):
        with (
            patch.object(sync_connections, "setup_logging"),
            patch.object(sync_connections, "get_session_local") as mock_session_local,
            patch.object(sync_connections, "OpenFinanceService") as mock_service_cls,
            patch.object(sync_connections, "run", return_value=1) as mock_run,
        ):
            mock_db = MagicMock()
            mock_session_local.return_value = MagicMock(return_value=mock_db)

            code = sync_connections.main(["--user-id", "42", "--max-attempts", "5"])

        assert code == 1
        mock_service_cls.assert_called_once_with(max_attempts=5)
        mock_run.assert_called_once_with(
            mock_db, mock_service_cls.return_value, user_id="42", refresh=False
        )
        mock_db.close.assert_called_once()

    def test_success_exit_code(self):
        with (
            patch.object(sync_connections, "setup_logging"),
            patch.object(sync_connections, "get_session_local"),
            patch.object(sync_connections, "OpenFinanceService"),
            patch.object(sync_connections, "run", return_value=0),
        ):
            assert sync_connections.main([]) == 0
