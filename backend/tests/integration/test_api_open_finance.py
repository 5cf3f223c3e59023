"""Integration tests for the open finance API."""

import pytest

from api.open_finance import get_open_finance_service
from integrations.exceptions import AggregatorAPIError, AggregatorConnectionError
from main import app
from models import BankAccount, Connection
from models.enums import ConnectionStatus, ExecutionStatus
from tests.fixtures import create_connection, make_service
from tests.fixtures.mocks import (
    OAUTH_PARAMETER,
    TOKEN_PARAMETER,
    MockPluggyClient,
    make_item,
)

CONNECT_BODY = {
    "user_id": "user-1",
    "institution_id": "201",
    "credentials": {"user": "123.456.789-09", "password": "s3nha"},
}
UPDATED = make_item(ConnectionStatus.UPDATED, execution_status=ExecutionStatus.SUCCESS)


@pytest.fixture
def use_aggregator(client):
    """Swap the aggregator behind the API for a scripted one."""

    def _use(mock_client: MockPluggyClient) -> MockPluggyClient:
        service = make_service(mock_client)
        app.dependency_overrides[get_open_finance_service] = lambda: service
        return mock_client

    return _use


class TestInstitutions:
    def test_search(self, client):
        response = client.get("/api/open-finance/institutions", params={"q": "exemplo"})
        assert response.status_code == 200
        data = response.json()
        assert [i["id"] for i in data] == ["201"]
        assert data[0]["is_open_finance"] is True

    def test_credential_fields(self, client):
        response = client.get("/api/open-finance/institutions/201/credentials")
        assert response.status_code == 200
        fields = response.json()
        assert [f["name"] for f in fields] == ["user", "password"]
        assert fields[0]["validation_message"] == "CPF deve ter 11 dígitos"

    def test_unknown_institution(self, client):
        response = client.get("/api/open-finance/institutions/999/credentials")
        assert response.status_code == 502

    def test_connect_token(self, client):
        response = client.post("/api/open-finance/connect-token", json={"user_id": "user-1"})
        assert response.status_code == 200
        assert response.json() == {"access_token": "connect-token-123"}


class TestConnect:
    def test_connect_and_sync(self, client, db):
        response = client.post("/api/open-finance/connections", json=CONNECT_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["outcome"] == "SYNCED"
        assert data["status"] == "UPDATED"
        assert data["transactions_saved"] == 4
        assert data["action"] is None
        assert db.query(Connection).count() == 1

    def test_local_validation_error(self, client, db):
        body = dict(CONNECT_BODY, credentials={"user": "123"})

        response = client.post("/api/open-finance/connections", json=body)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert set(detail["field_errors"]) == {"user", "password"}
        assert db.query(Connection).count() == 0

    def test_missing_body_fields(self, client):
        response = client.post("/api/open-finance/connections", json={"user_id": "u"})
        assert response.status_code == 422

    def test_rejected_credentials_are_an_outcome(self, client, use_aggregator):
        use_aggregator(
            MockPluggyClient(
                create_response=make_item(
                    ConnectionStatus.LOGIN_ERROR, error_message="invalid password"
                )
            )
        )

        response = client.post("/api/open-finance/connections", json=CONNECT_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["outcome"] == "CREDENTIALS_REJECTED"
        assert data["message"] == "invalid password"

    def test_aggregator_down(self, client, use_aggregator):
        use_aggregator(
            MockPluggyClient(create_response=AggregatorConnectionError("down"))
        )
        response = client.post("/api/open-finance/connections", json=CONNECT_BODY)
        assert response.status_code == 502

    def test_timeout(self, client, use_aggregator):
        use_aggregator(MockPluggyClient(items=[make_item(ConnectionStatus.UPDATING)]))

        response = client.post("/api/open-finance/connections", json=CONNECT_BODY)

        data = response.json()
        assert data["outcome"] == "TIMED_OUT"
        assert data["status"] == "UPDATING"


class TestOAuthFlow:
    def test_oauth_then_callback(self, client, use_aggregator):
        use_aggregator(
            MockPluggyClient(
                items=[
                    make_item(ConnectionStatus.WAITING_INPUT, parameter=OAUTH_PARAMETER),
                    UPDATED,
                ]
            )
        )

        response = client.post(
            "/api/open-finance/connections", json=dict(CONNECT_BODY, resume_target="accounts")
        )
        data = response.json()
        assert data["outcome"] == "OAUTH_REQUIRED"
        assert data["action"] == {
            "kind": "OPEN_OAUTH",
            "url": "https://bank.example/auth",
            "field": None,
            "connection_id": None,
            "reason": None,
        }

        conn = client.get(f"/api/open-finance/connections/{data['local_id']}").json()
        assert conn["status"] == "WAITING_INPUT"
        assert conn["pending_challenge_kind"] == "OAUTH"

        callback = client.post("/api/open-finance/oauth/callback", json={})
        assert callback.status_code == 200
        assert callback.json()["outcome"] == "SYNCED"

    def test_callback_without_pending_flow(self, client):
        response = client.post("/api/open-finance/oauth/callback", json={})
        assert response.status_code == 404


class TestMFAFlow:
    def test_prompt_then_submit(self, client, use_aggregator):
        mock_client = use_aggregator(
            MockPluggyClient(
                items=[make_item(ConnectionStatus.WAITING_INPUT, parameter=TOKEN_PARAMETER), UPDATED]
            )
        )

        data = client.post("/api/open-finance/connections", json=CONNECT_BODY).json()
        assert data["outcome"] == "MFA_REQUIRED"
        assert data["action"]["kind"] == "PROMPT_MFA"
        assert data["action"]["field"]["validation"] == "^[0-9]{6}$"
        local_id = data["local_id"]

        bad = client.post(f"/api/open-finance/connections/{local_id}/mfa", json={"value": "12a456"})
        assert bad.status_code == 422
        assert bad.json()["detail"]["field_errors"] == {"token": "O token deve ter 6 dígitos"}
        assert mock_client.call_count("send_mfa") == 0

        good = client.post(f"/api/open-finance/connections/{local_id}/mfa", json={"value": "123456"})
        assert good.status_code == 200
        assert good.json()["outcome"] == "SYNCED"

    def test_rejected_code(self, client, use_aggregator, mfa_connection):
        use_aggregator(
            MockPluggyClient(
                mfa_response=AggregatorAPIError(
                    "Pluggy API error (HTTP 400): Invalid token",
                    status_code=400,
                    detail="Invalid token",
                )
            )
        )

        response = client.post(
            f"/api/open-finance/connections/{mfa_connection.id}/mfa", json={"value": "123456"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == {"message": "Invalid token", "retryable": True}

    def test_no_challenge_pending(self, client, connection):
        response = client.post(
            f"/api/open-finance/connections/{connection.id}/mfa", json={"value": "123456"}
        )
        assert response.status_code == 409


class TestConnections:
    def test_list_by_user(self, client, connection):
        response = client.get("/api/open-finance/connections", params={"user_id": "user-1"})
        assert [c["id"] for c in response.json()] == [connection.id]
        assert client.get("/api/open-finance/connections", params={"user_id": "x"}).json() == []

    def test_get_by_aggregator_id(self, client, connection):
        response = client.get("/api/open-finance/connections/item-1")
        assert response.json()["id"] == connection.id

    def test_get_unknown(self, client):
        assert client.get("/api/open-finance/connections/nope").status_code == 404

    def test_sync(self, client, connection):
        response = client.post(f"/api/open-finance/connections/{connection.id}/sync")
        assert response.status_code == 200
        assert response.json()["accounts_upserted"] == 2

    def test_sync_unknown(self, client):
        assert client.post("/api/open-finance/connections/nope/sync").status_code == 404

    def test_refresh(self, client, connection, mock_pluggy):
        response = client.post(f"/api/open-finance/connections/{connection.id}/refresh")
        assert response.status_code == 200
        assert mock_pluggy.call_count("update_item") == 1

    def test_accounts_and_transactions(self, client, db, connection):
        client.post(f"/api/open-finance/connections/{connection.id}/sync")

        accounts = client.get(f"/api/open-finance/connections/{connection.id}/accounts").json()
        assert [a["external_id"] for a in accounts] == ["acc-card", "acc-checking"]

        checking = db.query(BankAccount).filter_by(external_id="acc-checking").one()
        txns = client.get(
            f"/api/open-finance/accounts/{checking.id}/transactions", params={"limit": 2}
        ).json()
        assert len(txns) == 2

    def test_transactions_unknown_account(self, client):
        assert client.get("/api/open-finance/accounts/nope/transactions").status_code == 404

    def test_disconnect(self, client, db, connection):
        response = client.delete(f"/api/open-finance/connections/{connection.id}")
        assert response.status_code == 204
        assert db.query(Connection).count() == 0

    def test_disconnect_with_remote_failure(self, client, db, connection, use_aggregator):
        use_aggregator(MockPluggyClient(delete_error=AggregatorConnectionError("down")))
        response = client.delete(f"/api/open-finance/connections/{connection.id}")
        assert response.status_code == 204
        assert db.query(Connection).count() == 0

    def test_disconnect_unknown(self, client):
        assert client.delete("/api/open-finance/connections/nope").status_code == 404


class TestWebhooks:
    def test_item_updated(self, client, connection):
        response = client.post(
            "/api/open-finance/webhooks/pluggy",
            json={"event": "item/updated", "itemId": "item-1"},
        )
        assert response.status_code == 200
        assert response.json()["handled"] is True

    def test_missing_event(self, client):
        response = client.post("/api/open-finance/webhooks/pluggy", json={"itemId": "x"})
        assert response.status_code == 400

    def test_stale_status_is_acknowledged(self, client, db, use_aggregator):
        conn = create_connection(db, status=ConnectionStatus.UPDATING)
        use_aggregator(MockPluggyClient(items=[make_item(ConnectionStatus.CREATED)]))

        response = client.post(
            "/api/open-finance/webhooks/pluggy",
            json={"event": "item/created", "itemId": "item-1"},
        )

        assert response.status_code == 200
        assert response.json()["handled"] is False
        assert response.json()["detail"] == "stale status"
        db.refresh(conn)
        assert conn.status == "UPDATING"


class TestAggregators:
    def test_list(self, client):
        response = client.get("/api/open-finance/aggregators")
        assert response.status_code == 200
        assert response.json() == ["Pluggy"]

    def test_unconfigured_aggregator(self, client, db):
        body = dict(CONNECT_BODY, aggregator="Belvo")

        response = client.post("/api/open-finance/connections", json=body)

        assert response.status_code == 502
        assert db.query(Connection).count() == 0

    def test_connect_with_chosen_aggregator(self, client, db, service):
        service.registry.register_aggregator(
            MockPluggyClient(items=[UPDATED], aggregator_name="Belvo")
        )

        response = client.post(
            "/api/open-finance/connections", json=dict(CONNECT_BODY, aggregator="Belvo")
        )

        assert response.status_code == 201
        local_id = response.json()["local_id"]
        detail = client.get(f"/api/open-finance/connections/{local_id}").json()
        assert detail["aggregator"] == "Belvo"


class TestLink:
    def test_link_widget_connection(self, client, db):
        response = client.post(
            "/api/open-finance/connections/link",
            json={"user_id": "user-1", "connection_id": "item-1"},
        )

        assert response.status_code == 201
        assert response.json()["outcome"] == "SYNCED"
        conn = db.query(Connection).one()
        assert conn.user_id == "user-1"
        assert conn.aggregator == "Pluggy"

    def test_link_unknown_connection(self, client, use_aggregator):
        use_aggregator(
            MockPluggyClient(
                items=[AggregatorAPIError("missing", aggregator_name="Pluggy", status_code=404)]
            )
        )
        response = client.post(
            "/api/open-finance/connections/link",
            json={"user_id": "user-1", "connection_id": "nope"},
        )
        assert response.status_code == 404
