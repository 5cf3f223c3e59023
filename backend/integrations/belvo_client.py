"""Belvo API client.

This module implements the AggregatorClient protocol for Belvo. Belvo calls a
connection a "Link" and identifies institutions by their code name (for
example ``ofbradesco_br_retail``). Requests authenticate with HTTP Basic auth
using the secret id/password pair.

Belvo has no status polling endpoint with Pluggy's vocabulary; a link is
``valid``, ``invalid``, ``unconfirmed`` or ``token_required``, and an MFA
challenge is signalled by an HTTP 428 response carrying a session that must be
echoed back with the token. Both are mapped to the normalized shapes here.
"""

import logging
from datetime import date
from typing import Any, Iterator

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
from models.enums import AccountKind, ConnectionStatus, MovementKind, TransactionStatus

logger = logging.getLogger(__name__)

AGGREGATOR_NAME = "Belvo"

_LINK_STATUS_MAP: dict[str, ConnectionStatus] = {
    "valid": ConnectionStatus.UPDATED,
    "unconfirmed": ConnectionStatus.UPDATING,
    "invalid": ConnectionStatus.LOGIN_ERROR,
    "token_required": ConnectionStatus.OUTDATED,
}

_LINK_STATUS_MESSAGES: dict[str, str] = {
    "invalid": "The institution no longer accepts the stored credentials",
    "token_required": "The institution requires a new token to refresh this link",
}

_ACCOUNT_KIND_MAP: dict[str, AccountKind] = {
    "CHECKING_ACCOUNT": AccountKind.DEPOSIT,
    "SAVINGS_ACCOUNT": AccountKind.DEPOSIT,
    "CREDIT_CARD": AccountKind.CREDIT,
}

_MOVEMENT_MAP: dict[str, MovementKind] = {
    "INFLOW": MovementKind.CREDIT,
    "OUTFLOW": MovementKind.DEBIT,
}

WIDGET_SCOPES = "read_institutions,write_links,read_links"


class BelvoTokenRequired(AggregatorAPIError):
    """HTTP 428: the institution wants a one-time token to continue.

    ``payload`` is the first entry of Belvo's error list, which carries the
    ``session`` and ``link`` the token must be sent with.
    """

    def __init__(self, message: str, payload: dict):
        self.payload = payload
        super().__init__(
            message,
            aggregator_name=AGGREGATOR_NAME,
            status_code=428,
            detail=payload.get("message"),
        )


class BelvoClient:
    """Wrapper around the Belvo REST API."""

    _PAGE_SIZE = 100

    def __init__(
        self,
        secret_id: str | None = None,
        secret_password: str | None = None,
        base_url: str | None = None,
        widget_callback_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._secret_id = secret_id or settings.BELVO_SECRET_ID
        self._secret_password = secret_password or settings.BELVO_SECRET_PASSWORD
        self._base_url = base_url or settings.BELVO_BASE_URL
        self._widget_callback_url = widget_callback_url or settings.BELVO_WIDGET_CALLBACK_URL
        self._timeout = timeout or settings.BELVO_TIMEOUT_SECONDS

        # Lazily created on first use
        self._http_client = http_client

    @property
    def aggregator_name(self) -> str:
        return AGGREGATOR_NAME

    def is_configured(self) -> bool:
        """Check if Belvo secrets are configured."""
        return bool(self._secret_id) and bool(self._secret_password)

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

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        if not self.is_configured():
            raise AggregatorAuthError(
                "Belvo secrets not configured. Set BELVO_SECRET_ID and "
                "BELVO_SECRET_PASSWORD in the keychain or environment.",
                aggregator_name=AGGREGATOR_NAME,
            )
        try:
            response = self._http().request(
                method,
                path,
                json=json,
                params=params,
                auth=(self._secret_id, self._secret_password),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise self._map_status_error(exc.response) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise AggregatorConnectionError(
                f"Belvo connection failed: {exc}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc
        except httpx.TransportError as exc:
            raise AggregatorConnectionError(
                f"Belvo transport error: {exc}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise AggregatorDataError(
                f"Belvo returned a non-JSON response for {method} {path}",
                aggregator_name=AGGREGATOR_NAME,
            ) from exc

    @staticmethod
    def _error_entry(response: httpx.Response) -> dict:
        """Belvo errors are a list of ``{code, message}``; some are ``{detail}``."""
        try:
            body = response.json()
        except ValueError:
            return {}
        if isinstance(body, list) and body and isinstance(body[0], dict):
            return body[0]
        if isinstance(body, dict):
            return body
        return {}

    @classmethod
    def _map_status_error(cls, response: httpx.Response) -> Exception:
        status = response.status_code
        entry = cls._error_entry(response)
        detail = entry.get("message") or entry.get("detail")

        if status == 428:
            return BelvoTokenRequired("Belvo requires a token (HTTP 428)", entry)
        if status in (401, 403):
            return AggregatorAuthError(
                f"Belvo authentication failed (HTTP {status})",
                aggregator_name=AGGREGATOR_NAME,
            )
        message = f"Belvo API error (HTTP {status})"
        if detail:
            message = f"{message}: {detail}"
        return AggregatorAPIError(
            message,
            aggregator_name=AGGREGATOR_NAME,
            status_code=status,
            detail=detail,
        )

    def _paginate(self, path: str, params: dict) -> Iterator[dict]:
        """Yield every result across pages by following ``next`` links."""
        data = self._request("GET", path, params={"page_size": self._PAGE_SIZE, **params})
        while True:
            if isinstance(data, list):
                yield from data
                return
            data = data or {}
            yield from data.get("results", []) or []
            next_url = data.get("next")
            if not next_url:
                return
            data = self._request("GET", next_url)

    # ------------------------------------------------------------------
    # Institutions & tokens
    # ------------------------------------------------------------------

    def list_institutions(self, query: str | None = None) -> list[Institution]:
        params = {"country_code__in": "BR"}
        if query:
            params["display_name__icontains"] = query
        return [self._map_institution(raw) for raw in self._paginate("/api/institutions/", params)]

    def get_institution(self, institution_id: str) -> Institution:
        for raw in self._paginate("/api/institutions/", {"name": institution_id}):
            return self._map_institution(raw)
        raise AggregatorAPIError(
            f"Belvo institution {institution_id} not found",
            aggregator_name=AGGREGATOR_NAME,
            status_code=404,
        )

    def create_connect_token(self, client_user_id: str | None = None) -> str:
        """Create a widget access token (valid for ten minutes).

        The widget handles Open Finance consent itself and redirects to the
        callback URL when the link is created.
        """
        callback = self._widget_callback_url.rstrip("/")
        body: dict[str, Any] = {
            "id": self._secret_id,
            "password": self._secret_password,
            "scopes": WIDGET_SCOPES,
            "widget": {
                "locale": "pt",
                "callback_urls": {
                    "success": f"{callback}/success",
                    "exit": f"{callback}/exit",
                },
                "openfinance_feature": "consent_link_creation",
                "integration_type": "openfinance",
                "country_codes": ["BR"],
            },
        }
        if client_user_id:
            body["external_id"] = client_user_id
        data = self._request("POST", "/api/token/", json=body) or {}
        token = data.get("access")
        if not token:
            raise AggregatorDataError(
                "Belvo /api/token/ response did not include an access token",
                aggregator_name=AGGREGATOR_NAME,
            )
        return token

    # ------------------------------------------------------------------
    # Links (connections)
    # ------------------------------------------------------------------

    def create_item(
        self,
        institution_id: str,
        parameters: dict[str, str],
        products: list[str] | None = None,
        client_user_id: str | None = None,
    ) -> AggregatorItem:
        body: dict[str, Any] = {
            "institution": institution_id,
            "access_mode": "recurrent",
            **parameters,
        }
        if products:
            body["fetch_resources"] = products
        if client_user_id:
            body["external_id"] = client_user_id

        try:
            item = self._map_link(self._request("POST", "/api/links/", json=body))
        except BelvoTokenRequired as exc:
            item = self._token_item(exc.payload, institution_id)
        logger.info(
            "Belvo: link %s registered for %s (status=%s)",
            item.id, institution_id, item.status.value,
        )
        return item

    def get_item(self, item_id: str) -> AggregatorItem:
        return self._map_link(self._request("GET", f"/api/links/{item_id}/"))

    def update_item(self, item_id: str) -> AggregatorItem:
        """Make Belvo fetch fresh data from the institution.

        Belvo refreshes a link as a side effect of retrieving its accounts
        with ``save_data``; the link is read back afterwards.
        """
        try:
            self._request("POST", "/api/accounts/", json={"link": item_id, "save_data": True})
        except BelvoTokenRequired as exc:
            return self._token_item(exc.payload, None, link_id=item_id)
        return self.get_item(item_id)

    def send_mfa(
        self,
        item_id: str,
        parameters: dict[str, str],
        challenge: ChallengeParameter | None = None,
    ) -> AggregatorItem:
        """Resume a link login with the token the institution asked for."""
        data = challenge.data if challenge is not None and isinstance(challenge.data, dict) else {}
        session = data.get("session")
        if not session:
            raise AggregatorDataError(
                f"No Belvo session stored for link {item_id}",
                aggregator_name=AGGREGATOR_NAME,
            )
        token = parameters.get("token") or next(iter(parameters.values()), "")
        body = {"session": session, "link": item_id, "token": token}
        try:
            return self._map_link(self._request("PATCH", "/api/links/", json=body))
        except BelvoTokenRequired as exc:
            return self._token_item(exc.payload, None, link_id=item_id)

    def delete_item(self, item_id: str) -> None:
        """Delete a link remotely; an already-missing link is not an error."""
        try:
            self._request("DELETE", f"/api/links/{item_id}/")
        except AggregatorAPIError as exc:
            if not exc.is_not_found:
                raise
            logger.info("Belvo: link %s already gone", item_id)

    # ------------------------------------------------------------------
    # Accounts & transactions
    # ------------------------------------------------------------------

    def list_accounts(self, item_id: str) -> list[AggregatorAccount]:
        accounts = []
        for raw in self._paginate("/api/accounts/", {"link": item_id}):
            account = self._map_account(raw)
            if account is not None:
                accounts.append(account)
        logger.info("Belvo: %d accounts fetched for link %s", len(accounts), item_id)
        return accounts

    def list_transactions(
        self, account_id: str, date_range: DateRange, item_id: str | None = None
    ) -> list[AggregatorTransaction]:
        """Fetch an account's transactions; Belvo filters them by link too."""
        params = {
            "account": account_id,
            "date_from": date_range.start.isoformat(),
            "date_to": date_range.end.isoformat(),
        }
        if item_id:
            params["link"] = item_id

        transactions = []
        for raw in self._paginate("/api/transactions/", params):
            txn = self._map_transaction(raw, account_id)
            if txn is not None:
                transactions.append(txn)
        logger.info(
            "Belvo: %d transactions fetched for account %s (%s..%s)",
            len(transactions), account_id, date_range.start, date_range.end,
        )
        return transactions

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_institution(raw: dict) -> Institution:
        return Institution(
            id=str(raw.get("name") or raw.get("id") or ""),
            name=raw.get("display_name") or raw.get("name") or "",
            credentials=[
                CredentialField(
                    name=f.get("name", ""),
                    label=f.get("label") or f.get("name", ""),
                    type=f.get("type") or "text",
                    placeholder=f.get("placeholder"),
                    validation=f.get("validation"),
                    validation_message=f.get("validation_message"),
                    optional=bool(f.get("optional", False)),
                )
                for f in raw.get("form_fields", []) or []
            ],
            image_url=raw.get("logo"),
            is_open_finance=raw.get("integration_type") == "openfinance",
            products=list(raw.get("resources", []) or []),
        )

    @staticmethod
    def _map_link(raw: Any) -> AggregatorItem:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise AggregatorDataError(
                "Belvo link payload is missing an id",
                aggregator_name=AGGREGATOR_NAME,
            )
        raw_status = str(raw.get("status") or "")
        status = _LINK_STATUS_MAP.get(raw_status)
        if status is None:
            raise AggregatorDataError(
                f"Unknown Belvo link status {raw_status!r}",
                aggregator_name=AGGREGATOR_NAME,
            )
        return AggregatorItem(
            id=str(raw["id"]),
            status=status,
            institution_id=raw.get("institution"),
            institution_name=raw.get("institution"),
            error_message=_LINK_STATUS_MESSAGES.get(raw_status),
            error_code=raw_status if status.is_fatal else None,
            last_updated_at=parse_iso_datetime(raw.get("last_accessed_at")),
        )

    @staticmethod
    def _token_item(
        payload: dict, institution_id: str | None, link_id: str | None = None
    ) -> AggregatorItem:
        """Turn a 428 payload into a WAITING_INPUT item with a token challenge."""
        link_id = payload.get("link") or link_id
        session = payload.get("session")
        if not link_id or not session:
            raise AggregatorDataError(
                "Belvo token request did not include a link and session",
                aggregator_name=AGGREGATOR_NAME,
            )
        parameter = ChallengeParameter.from_payload(
            {
                "name": "token",
                "type": "text",
                "label": "Token",
                "assistiveText": payload.get("message"),
                "data": {
                    "session": session,
                    "link": link_id,
                    "expiry": payload.get("expiry"),
                },
            }
        )
        return AggregatorItem(
            id=str(link_id),
            status=ConnectionStatus.WAITING_INPUT,
            institution_id=institution_id,
            parameter=parameter,
        )

    @staticmethod
    def _map_account(raw: dict) -> AggregatorAccount | None:
        account_id = raw.get("id")
        category = str(raw.get("category") or "").upper().replace(" ", "_")
        kind = _ACCOUNT_KIND_MAP.get(category)
        if not account_id or kind is None:
            logger.warning(
                "Skipping Belvo account %s with unsupported category %r",
                account_id, raw.get("category"),
            )
            return None

        balance = raw.get("balance") or {}
        credit = raw.get("credit_data") or {}
        return AggregatorAccount(
            id=str(account_id),
            name=raw.get("name") or "Conta",
            kind=kind,
            balance=to_decimal(balance.get("current")),
            currency=(raw.get("currency") or "BRL").upper(),
            subtype=category,
            number=raw.get("number"),
            credit_limit=to_decimal(credit.get("credit_limit")) if kind is AccountKind.CREDIT else None,
            available_credit_limit=(
                to_decimal(credit.get("available_credit")) if kind is AccountKind.CREDIT else None
            ),
        )

    @staticmethod
    def _map_transaction(raw: dict, account_id: str) -> AggregatorTransaction | None:
        external_id = raw.get("id")
        amount = to_decimal(raw.get("amount"))
        txn_date: date | None = parse_iso_date(raw.get("value_date"))
        if not external_id or amount is None or txn_date is None:
            logger.warning("Skipping malformed Belvo transaction %s", external_id)
            return None

        movement = _MOVEMENT_MAP.get(str(raw.get("type") or "").upper())
        if movement is None:
            movement = MovementKind.CREDIT if amount >= 0 else MovementKind.DEBIT

        status = (
            TransactionStatus.PENDING
            if str(raw.get("status") or "").upper() == "PENDING"
            else TransactionStatus.SETTLED
        )

        return AggregatorTransaction(
            id=str(external_id),
            account_id=account_id,
            amount=amount,
            date=txn_date,
            description=raw.get("description"),
            movement=movement,
            status=status,
            category=raw.get("category"),
            currency=raw.get("currency") or None,
        )
