"""Pluggy API client.

This module implements the AggregatorClient protocol for Pluggy, the Open
Finance aggregator that brokers the actual bank connections. Pluggy calls a
connection an "Item" and an institution a "Connector"; both are mapped to the
normalized shapes in :mod:`integrations.aggregator_protocol` here so nothing
else in the app depends on Pluggy's wire format.

We make direct HTTP requests with ``httpx`` rather than using an SDK: the
surface we need is small and the status semantics are what matter.
"""

import logging
import time
from datetime import date
from typing import Any

import httpx

from config import settings
from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorItem,
    AggregatorTransaction,
    ChallengeParameter,
    CredentialField,
    DateRange,
    Institution,
)
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorDataError,
)
from integrations.parsing_utils import parse_iso_date, parse_iso_datetime, to_decimal
from models.enums import (
    AccountKind,
    ConnectionStatus,
    ExecutionStatus,
    MovementKind,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

AGGREGATOR_NAME = "Pluggy"

# Pluggy's wire names that differ from ours.
_STATUS_MAP: dict[str, ConnectionStatus] = {
    "WAITING_USER_INPUT": ConnectionStatus.WAITING_INPUT,
    **{s.value: s for s in ConnectionStatus},
}

_ACCOUNT_KIND_MAP: dict[str, AccountKind] = {
    "BANK": AccountKind.DEPOSIT,
    "CREDIT": AccountKind.CREDIT,
}

_TRANSACTION_STATUS_MAP: dict[str, TransactionStatus] = {
    "POSTED": TransactionStatus.SETTLED,
    "PENDING": TransactionStatus.PENDING,
}


class PluggyClient:
    """Wrapper around the Pluggy REST API.

    Authentication is a two-step affair: the client id/secret are exchanged
    for an API key (``POST /auth``) that is valid for two hours. The key is
    cached and refreshed shortly before it expires, or immediately if the
    API answers 401.
    """

    _API_KEY_TTL_SECONDS = 2 * 60 * 60
    _API_KEY_REFRESH_MARGIN_SECONDS = 10 * 60
    _PAGE_SIZE = 500

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        oauth_redirect_url: str | None = None,
        webhook_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._client_id = client_id or settings.PLUGGY_CLIENT_ID
        self._client_secret = client_secret or settings.PLUGGY_CLIENT_SECRET
        self._base_url = base_url or settings.PLUGGY_BASE_URL
        self._oauth_redirect_url = oauth_redirect_url or settings.PLUGGY_OAUTH_REDIRECT_URL
        self._webhook_url = webhook_url or settings.PLUGGY_WEBHOOK_URL
        self._timeout = timeout or settings.PLUGGY_TIMEOUT_SECONDS

        # Lazily created on first use
        self._http_client = http_client
        self._api_key: str | None = None
        self._api_key_expires_at = 0.0

    @property
    def aggregator_name(self) -> str:
        return AGGREGATOR_NAME

    def is_configured(self) -> bool:
        """Check if Pluggy credentials are configured."""
        return bool(self._client_id) and bool(self._client_secret)

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _http(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(base_url=self._base_url, timeout=self._timeout)
        return self._http_client

    def _get_api_key(self) -> str:
        """Return a cached API key, authenticating when missing or near expiry."""
        if (
            self._api_key is not None
            and time.monotonic() < self._api_key_expires_at - self._API_KEY_REFRESH_MARGIN_SECONDS
        ):
            return self._api_key

        if not self.is_configured():
            raise AggregatorAuthError(
                "Pluggy credentials not configured. "
                "Run 'python scripts/setup_pluggy.py' to set up Pluggy.",
                aggregator_name=AGGREGATOR_NAME,
            )

        data = self._send(
            "POST",
            "/auth",
            json={"clientId": self._client_id, "clientSecret": self._client_secret},
            api_key=None,
        )
        api_key = data.get("apiKey") if isinstance(data, dict) else None
        if not api_key:
            raise AggregatorDataError(
                "Pluggy /auth response did not include an apiKey",
                aggregator_name=AGGREGATOR_NAME,
            )
        self._api_key = api_key
        self._api_key_expires_at = time.monotonic() + self._API_KEY_TTL_SECONDS
        logger.debug("Pluggy API key refreshed")
        return api_key

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """Issue an authenticated request, retrying once on an expired key."""
        try:
            return self._send(method, path, json=json, params=params, api_key=self._get_api_key())
        except AggregatorAuthError:
            if self._api_key is None:
                raise
            logger.info("Pluggy rejected cached API key; re-authenticating")
            self._api_key = None
            return self._send(method, path, json=json, params=params, api_key=self._get_api_key())

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        api_key: str | None,
    ) -> Any:
        headers = {"X-API-KEY": api_key} if api_key else {}
        try:
            response = self._http().request(method, path, json=json, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._map_status_error(exc.response) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise AggregatorConnectionError(
                f"Pluggy connection failed: {exc}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc
        except httpx.TransportError as exc:
            raise AggregatorConnectionError(
                f"Pluggy transport error: {exc}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise AggregatorDataError(
                f"Pluggy returned a non-JSON response for {method} {path}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc

    @staticmethod
    def _map_status_error(response: httpx.Response) -> Exception:
        """Map an HTTP error response to a typed aggregator exception."""
        status = response.status_code
        detail = None
        try:
            body = response.json()
            if isinstance(body, dict):
                detail = body.get("message") or body.get("error")
        except ValueError:
            pass

        if status in (401, 403):
            return AggregatorAuthError(
                f"Pluggy authentication failed (HTTP {status})",
                aggregator_name=AGGREGATOR_NAME,
            )
        message = f"Pluggy API error (HTTP {status})"
        if detail:
            message = f"{message}: {detail}"
        return AggregatorAPIError(
            message,
            aggregator_name=AGGREGATOR_NAME,
            status_code=status,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Institutions & tokens
    # ------------------------------------------------------------------

    def list_institutions(self, query: str | None = None) -> list[Institution]:
        params = {"name": query} if query else None
        data = self._request("GET", "/connectors", params=params) or {}
        return [self._map_connector(c) for c in data.get("results", []) or []]

    def get_institution(self, institution_id: str) -> Institution:
        data = self._request("GET", f"/connectors/{institution_id}")
        if not isinstance(data, dict):
            raise AggregatorDataError(
                f"Pluggy returned no connector for {institution_id}",
                aggregator_name=AGGREGATOR_NAME,
            )
        return self._map_connector(data)

    def create_connect_token(self, client_user_id: str | None = None) -> str:
        """Create a short-lived connect token for client-side widgets.

        Connect tokens carry the OAuth redirect URL, which OAuth connectors
        need in order to send the user back to the app.
        """
        options: dict[str, str] = {"oauthRedirectUri": self._oauth_redirect_url}
        if client_user_id:
            options["clientUserId"] = client_user_id
        if self._webhook_url:
            options["webhookUrl"] = self._webhook_url
        data = self._request("POST", "/connect_token", json={"options": options}) or {}
        token = data.get("accessToken")
        if not token:
            raise AggregatorDataError(
                "Pluggy /connect_token response did not include an accessToken",
                aggregator_name=AGGREGATOR_NAME,
            )
        return token

    # ------------------------------------------------------------------
    # Items (connections)
    # ------------------------------------------------------------------

    def create_item(
        self,
        institution_id: str,
        parameters: dict[str, str],
        products: list[str] | None = None,
        client_user_id: str | None = None,
    ) -> AggregatorItem:
        body: dict[str, Any] = {
            "connectorId": int(institution_id) if str(institution_id).isdigit() else institution_id,
            "parameters": parameters,
            "oauthRedirectUri": self._oauth_redirect_url,
        }
        if products:
            body["products"] = products
        if client_user_id:
            body["clientUserId"] = client_user_id
        if self._webhook_url:
            body["webhookUrl"] = self._webhook_url

        item = self._map_item(self._request("POST", "/items", json=body))
        logger.info(
            "Pluggy: item %s created for connector %s (status=%s)",
            item.id, institution_id, item.status.value,
        )
        return item

    def get_item(self, item_id: str) -> AggregatorItem:
        return self._map_item(self._request("GET", f"/items/{item_id}"))

    def update_item(self, item_id: str) -> AggregatorItem:
        return self._map_item(self._request("PATCH", f"/items/{item_id}", json={}))

    def send_mfa(
        self,
        item_id: str,
        parameters: dict[str, str],
        challenge: ChallengeParameter | None = None,
    ) -> AggregatorItem:
        return self._map_item(self._request("POST", f"/items/{item_id}/mfa", json=parameters))

    def delete_item(self, item_id: str) -> None:
        """Delete an item remotely; an already-missing item is not an error."""
        try:
            self._request("DELETE", f"/items/{item_id}")
        except AggregatorAPIError as exc:
            if not exc.is_not_found:
                raise
            logger.info("Pluggy: item %s already gone", item_id)

    # ------------------------------------------------------------------
    # Accounts & transactions
    # ------------------------------------------------------------------

    def list_accounts(self, item_id: str) -> list[AggregatorAccount]:
        data = self._request("GET", "/accounts", params={"itemId": item_id}) or {}
        accounts = []
        for raw in data.get("results", []) or []:
            account = self._map_account(raw)
            if account is not None:
                accounts.append(account)
        logger.info("Pluggy: %d accounts fetched for item %s", len(accounts), item_id)
        return accounts

    def list_transactions(
        self, account_id: str, date_range: DateRange, item_id: str | None = None
    ) -> list[AggregatorTransaction]:
        """Fetch all transactions in ``date_range`` across every result page.

        Pluggy addresses transactions by account alone; ``item_id`` is unused.
        """
        transactions: list[AggregatorTransaction] = []
        page = 1
        while True:
            params = {
                "accountId": account_id,
                "from": date_range.start.isoformat(),
                "to": date_range.end.isoformat(),
                "pageSize": self._PAGE_SIZE,
                "page": page,
            }
            data = self._request("GET", "/transactions", params=params) or {}
            for raw in data.get("results", []) or []:
                txn = self._map_transaction(raw, account_id)
                if txn is not None:
                    transactions.append(txn)

            total_pages = data.get("totalPages") or 1
            if page >= total_pages:
                break
            page += 1

        logger.info(
            "Pluggy: %d transactions fetched for account %s (%s..%s)",
            len(transactions), account_id, date_range.start, date_range.end,
        )
        return transactions

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_connector(raw: dict) -> Institution:
        return Institution(
            id=str(raw.get("id", "")),
            name=raw.get("name") or "",
            credentials=[
                CredentialField.from_payload(c) for c in raw.get("credentials", []) or []
            ],
            image_url=raw.get("imageUrl"),
            is_open_finance=bool(raw.get("isOpenFinance", False)),
            products=list(raw.get("products", []) or []),
        )

    @staticmethod
    def _map_item(raw: Any) -> AggregatorItem:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise AggregatorDataError(
                "Pluggy item payload is missing an id",
                aggregator_name=AGGREGATOR_NAME,
            )
        raw_status = str(raw.get("status") or "")
        status = _STATUS_MAP.get(raw_status)
        if status is None:
            raise AggregatorDataError(
                f"Unknown Pluggy item status {raw_status!r}",
                aggregator_name=AGGREGATOR_NAME,
            )

        # Pluggy reports many intermediate execution statuses (LOGIN_IN_PROGRESS,
        # ...); only the three final outcomes are meaningful here.
        execution_status = None
        raw_execution = raw.get("executionStatus")
        if raw_execution in ExecutionStatus._value2member_map_:
            execution_status = ExecutionStatus(raw_execution)

        connector = raw.get("connector") or {}
        error = raw.get("error") or {}
        parameter = raw.get("parameter")

        return AggregatorItem(
            id=str(raw["id"]),
            status=status,
            execution_status=execution_status,
            institution_id=str(connector["id"]) if connector.get("id") is not None else None,
            institution_name=connector.get("name"),
            parameter=ChallengeParameter.from_payload(parameter) if isinstance(parameter, dict) else None,
            error_message=error.get("message"),
            error_code=error.get("code"),
            last_updated_at=parse_iso_datetime(raw.get("lastUpdatedAt")),
        )

    @staticmethod
    def _map_account(raw: dict) -> AggregatorAccount | None:
        account_id = raw.get("id")
        kind = _ACCOUNT_KIND_MAP.get(str(raw.get("type") or "").upper())
        if not account_id or kind is None:
            logger.warning(
                "Skipping Pluggy account %s with unsupported type %r",
                account_id, raw.get("type"),
            )
            return None

        credit = raw.get("creditData") or {}
        return AggregatorAccount(
            id=str(account_id),
            name=raw.get("marketingName") or raw.get("name") or "Conta",
            kind=kind,
            balance=to_decimal(raw.get("balance")),
            currency=(raw.get("currencyCode") or "BRL").upper(),
            subtype=raw.get("subtype"),
            number=raw.get("number"),
            credit_limit=to_decimal(credit.get("creditLimit")) if kind is AccountKind.CREDIT else None,
            available_credit_limit=(
                to_decimal(credit.get("availableCreditLimit")) if kind is AccountKind.CREDIT else None
            ),
        )

    @staticmethod
    def _map_transaction(raw: dict, account_id: str) -> AggregatorTransaction | None:
        external_id = raw.get("id")
        amount = to_decimal(raw.get("amount"))
        txn_date: date | None = parse_iso_date(raw.get("date"))
        if not external_id or amount is None or txn_date is None:
            logger.warning("Skipping malformed Pluggy transaction %s", external_id)
            return None

        raw_type = str(raw.get("type") or "").upper()
        if raw_type in MovementKind._value2member_map_:
            movement = MovementKind(raw_type)
        else:
            movement = MovementKind.CREDIT if amount >= 0 else MovementKind.DEBIT

        status = _TRANSACTION_STATUS_MAP.get(
            str(raw.get("status") or "").upper(), TransactionStatus.SETTLED
        )

        return AggregatorTransaction(
            id=str(external_id),
            account_id=str(raw.get("accountId") or account_id),
            amount=amount,
            date=txn_date,
            description=raw.get("description"),
            movement=movement,
            status=status,
            description_raw=raw.get("descriptionRaw"),
            category=raw.get("category"),
            currency=(raw.get("currencyCode") or None),
        )
