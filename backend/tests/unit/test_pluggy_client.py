"""Unit tests for PluggyClient (httpx mock transport)."""

import json
from datetime import date
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest

from integrations.aggregator_protocol import DateRange
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorDataError,
)
from integrations.pluggy_client import PluggyClient
from models.enums import (
    AccountKind,
    ChallengeKind,
    ConnectionStatus,
    ExecutionStatus,
    MovementKind,
    TransactionStatus,
)
from services.challenge_router import classify_challenge

BASE_URL = "https://api.pluggy.test"


@pytest.fixture(autouse=True)
def empty_settings():
    """Keep locally configured Pluggy credentials out of the tests."""
    with patch("integrations.pluggy_client.settings") as mock_settings:
        mock_settings.PLUGGY_CLIENT_ID = ""
        mock_settings.PLUGGY_CLIENT_SECRET = ""
        mock_settings.PLUGGY_WEBHOOK_URL = ""
        mock_settings.PLUGGY_TIMEOUT_SECONDS = 30.0
        yield mock_settings


class FakePluggy:
    """Route table for an httpx.MockTransport; records every request."""

    def __init__(self, routes: dict | None = None):
        self.routes = {("POST", "/auth"): [httpx.Response(200, json={"apiKey": "key-1"})]}
        self.routes.update(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responses = self.routes.get((request.method, request.url.path))
        if responses is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(responses, Exception):
            raise responses
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def paths(self, method: str | None = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]


def _client(fake: FakePluggy, **kwargs) -> PluggyClient:
    http_client = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(fake))
    kwargs.setdefault("client_id", "id")
    kwargs.setdefault("client_secret", "secret")
    return PluggyClient(
        base_url=BASE_URL,
        oauth_redirect_url="https://app.example/oauth",
        http_client=http_client,
        **kwargs,
    )


def _item(status="UPDATED", **extra) -> dict:
    return {"id": "item-1", "status": status, "connector": {"id": 201, "name": "Banco"}, **extra}


class TestAuth:
    def test_api_key_cached_across_requests(self):
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, json=_item())]})
        client = _client(fake)

        client.get_item("item-1")
        client.get_item("item-1")

        assert fake.paths("POST").count("/auth") == 1
        item_requests = [r for r in fake.requests if r.url.path == "/items/item-1"]
        assert all(r.headers["X-API-KEY"] == "key-1" for r in item_requests)

    def test_reauthenticates_once_on_401(self):
        fake = FakePluggy(
            {
                ("POST", "/auth"): [
                    httpx.Response(200, json={"apiKey": "key-1"}),
                    httpx.Response(200, json={"apiKey": "key-2"}),
                ],
                ("GET", "/items/item-1"): [
                    httpx.Response(200, json=_item()),
                    httpx.Response(401, json={"message": "expired"}),
                    httpx.Response(200, json=_item()),
                ],
            }
        )
        client = _client(fake)
        client.get_item("item-1")

        item = client.get_item("item-1")

        assert item.status is ConnectionStatus.UPDATED
        assert fake.requests[-1].headers["X-API-KEY"] == "key-2"

    def test_bad_client_credentials(self):
        fake = FakePluggy({("POST", "/auth"): [httpx.Response(401, json={"message": "no"})]})
        with pytest.raises(AggregatorAuthError):
            _client(fake).get_item("item-1")

    def test_not_configured(self):
        fake = FakePluggy()
        client = _client(fake, client_id="", client_secret="")

        assert client.is_configured() is False
        with pytest.raises(AggregatorAuthError, match="not configured"):
            client.get_item("item-1")
        assert fake.requests == []


class TestErrorMapping:
    def test_api_error_carries_detail(self):
        fake = FakePluggy(
            {("POST", "/items/item-1/mfa"): [httpx.Response(400, json={"message": "Invalid token"})]}
        )
        with pytest.raises(AggregatorAPIError) as exc_info:
            _client(fake).send_mfa("item-1", {"token": "000000"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == "Invalid token"
        assert exc_info.value.retriable is False

    def test_server_error_is_retriable(self):
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(503, text="down")]})
        with pytest.raises(AggregatorAPIError) as exc_info:
            _client(fake).get_item("item-1")
        assert exc_info.value.retriable is True

    def test_transport_failure(self):
        fake = FakePluggy({("GET", "/items/item-1"): httpx.ConnectError("refused")})
        with pytest.raises(AggregatorConnectionError):
            _client(fake).get_item("item-1")

    def test_timeout(self):
        fake = FakePluggy({("GET", "/items/item-1"): httpx.ReadTimeout("slow")})
        with pytest.raises(AggregatorConnectionError):
            _client(fake).get_item("item-1")

    def test_non_json_body(self):
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, text="<html>")]})
        with pytest.raises(AggregatorDataError):
            _client(fake).get_item("item-1")

    def test_unknown_item_status(self):
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, json=_item("MYSTERY"))]})
        with pytest.raises(AggregatorDataError):
            _client(fake).get_item("item-1")

    def test_delete_missing_item_is_ignored(self):
        fake = FakePluggy({("DELETE", "/items/gone"): [httpx.Response(404, json={})]})
        _client(fake).delete_item("gone")

    def test_delete_other_failure_raises(self):
        fake = FakePluggy({("DELETE", "/items/item-1"): [httpx.Response(500, json={})]})
        with pytest.raises(AggregatorAPIError):
            _client(fake).delete_item("item-1")


class TestItems:
    def test_create_item_body(self):
        fake = FakePluggy(
            {("POST", "/items"): [httpx.Response(200, json=_item("UPDATING"))]}
        )
        item = _client(fake).create_item(
            "201", {"user": "12345678909"}, products=["ACCOUNTS"], client_user_id="user-1"
        )

        body = json.loads(fake.requests[-1].content)
        assert body == {
            "connectorId": 201,
            "parameters": {"user": "12345678909"},
            "oauthRedirectUri": "https://app.example/oauth",
            "products": ["ACCOUNTS"],
            "clientUserId": "user-1",
        }
        assert item.status is ConnectionStatus.UPDATING
        assert item.institution_id == "201"

    def test_waiting_user_input_with_oauth_parameter(self):
        payload = _item(
            "WAITING_USER_INPUT",
            executionStatus="WAITING_USER_INPUT",
            parameter={
                "name": "oauth_code",
                "type": "oauth",
                "label": "Entrar",
                "data": {"url": "https://bank.example/auth"},
            },
        )
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, json=payload)]})

        item = _client(fake).get_item("item-1")

        assert item.status is ConnectionStatus.WAITING_INPUT
        assert item.execution_status is None
        assert classify_challenge(item.parameter) is ChallengeKind.OAUTH
        assert item.parameter.raw == payload["parameter"]

    def test_fatal_item_keeps_error_message(self):
        payload = _item(
            "LOGIN_ERROR",
            executionStatus="INVALID_CREDENTIALS",
            error={"code": "INVALID_CREDENTIALS", "message": "invalid password"},
        )
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, json=payload)]})

        item = _client(fake).get_item("item-1")

        assert item.status is ConnectionStatus.LOGIN_ERROR
        assert item.error_message == "invalid password"
        assert item.error_code == "INVALID_CREDENTIALS"

    def test_final_execution_status(self):
        payload = _item(executionStatus="PARTIAL_SUCCESS")
        fake = FakePluggy({("GET", "/items/item-1"): [httpx.Response(200, json=payload)]})
        assert _client(fake).get_item("item-1").execution_status is ExecutionStatus.PARTIAL_SUCCESS

    def test_update_item_patches(self):
        fake = FakePluggy(
            {("PATCH", "/items/item-1"): [httpx.Response(200, json=_item("UPDATING"))]}
        )
        assert _client(fake).update_item("item-1").status is ConnectionStatus.UPDATING


class TestAccountsAndTransactions:
    def test_account_mapping(self):
        fake = FakePluggy(
            {
                ("GET", "/accounts"): [
                    httpx.Response(
                        200,
                        json={
                            "results": [
                                {
                                    "id": "a1",
                                    "type": "BANK",
                                    "subtype": "CHECKING_ACCOUNT",
                                    "name": "Conta",
                                    "marketingName": "Conta Max",
                                    "balance": 10.5,
                                    "currencyCode": "BRL",
                                },
                                {
                                    "id": "a2",
                                    "type": "CREDIT",
                                    "name": "Cartão",
                                    "balance": -20,
                                    "creditData": {
                                        "creditLimit": 1000,
                                        "availableCreditLimit": 980,
                                    },
                                },
                                {"id": "a3", "type": "INVESTMENT", "name": "Fundo"},
                            ]
                        },
                    )
                ]
            }
        )

        accounts = _client(fake).list_accounts("item-1")

        assert [a.id for a in accounts] == ["a1", "a2"]
        assert accounts[0].kind is AccountKind.DEPOSIT
        assert accounts[0].name == "Conta Max"
        assert accounts[0].credit_limit is None
        assert accounts[1].kind is AccountKind.CREDIT
        assert accounts[1].credit_limit == Decimal("1000")
        assert fake.requests[-1].url.params["itemId"] == "item-1"

    def test_transactions_follow_pages(self):
        page_one = {
            "totalPages": 2,
            "results": [
                {"id": "t1", "amount": -10.0, "date": "2026-09-01T00:00:00.000Z", "type": "DEBIT",
                 "status": "POSTED"},
            ],
        }
        page_two = {
            "totalPages": 2,
            "results": [
                {"id": "t2", "amount": 25.0, "date": "2026-09-02", "status": "PENDING"},
                {"id": "broken", "amount": None, "date": "2026-09-02"},
            ],
        }
        fake = FakePluggy(
            {
                ("GET", "/transactions"): [
                    httpx.Response(200, json=page_one),
                    httpx.Response(200, json=page_two),
                ]
            }
        )

        txns = _client(fake).list_transactions(
            "a1", DateRange(start=date(2026, 7, 1), end=date(2026, 10, 1))
        )

        assert [t.id for t in txns] == ["t1", "t2"]
        assert txns[0].amount == Decimal("-10.0")
        assert txns[0].status is TransactionStatus.SETTLED
        assert txns[1].movement is MovementKind.CREDIT
        assert txns[1].status is TransactionStatus.PENDING

        requests = [r for r in fake.requests if r.url.path == "/transactions"]
        assert [r.url.params["page"] for r in requests] == ["1", "2"]
        assert requests[0].url.params["from"] == "2026-07-01"
        assert requests[0].url.params["to"] == "2026-10-01"


class TestInstitutions:
    def test_connector_credentials(self):
        connector = {
            "id": 201,
            "name": "Banco Exemplo",
            "isOpenFinance": True,
            "credentials": [
                {"name": "cpf", "label": "CPF", "type": "text", "validation": "^\\d{11}$",
                 "validationMessage": "CPF inválido"},
                {"name": "password", "label": "Senha", "type": "password"},
            ],
        }
        fake = FakePluggy({("GET", "/connectors/201"): [httpx.Response(200, json=connector)]})

        institution = _client(fake).get_institution("201")

        assert institution.id == "201"
        assert institution.is_open_finance is True
        assert [f.name for f in institution.credentials] == ["cpf", "password"]
        assert institution.credentials[0].validation_message == "CPF inválido"

    def test_search_passes_name(self):
        fake = FakePluggy(
            {("GET", "/connectors"): [httpx.Response(200, json={"results": [{"id": 1, "name": "Itaú"}]})]}
        )
        result = _client(fake).list_institutions("ita")
        assert [i.name for i in result] == ["Itaú"]
        assert fake.requests[-1].url.params["name"] == "ita"

    def test_connect_token_options(self):
        fake = FakePluggy(
            {("POST", "/connect_token"): [httpx.Response(200, json={"accessToken": "tok"})]}
        )
        token = _client(fake).create_connect_token("user-1")

        assert token == "tok"
        assert json.loads(fake.requests[-1].content) == {
            "options": {"oauthRedirectUri": "https://app.example/oauth", "clientUserId": "user-1"}
        }
