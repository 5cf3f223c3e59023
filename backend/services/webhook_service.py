"""Webhook service - applies aggregator push notifications to the registry.

Webhooks are an optimization over polling: each event is re-checked against
the aggregator before anything is recorded, since payloads may be partial.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from integrations.exceptions import AggregatorError
from models import BankAccount, Connection
from models.enums import ConnectionStatus
from services.connection_registry import ConnectionRegistry
from services.connection_state import InvalidStatusTransition
from services.errors import AggregatorUnavailableError
from services.open_finance_service import OpenFinanceService
from services.reconciler import SyncReconciler

logger = logging.getLogger(__name__)

ITEM_EVENTS = frozenset(
    {"item/created", "item/updated", "item/error", "item/waiting_user_input"}
)


@dataclass
class WebhookEvent:
    event: str
    item_id: str | None = None
    account_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "WebhookEvent":
        """Accept both ``{event, data: {item, account}}`` and ``{event, itemId, accountId}``.

        Raises:
            ValueError: If the payload names no event.
        """
        event = payload.get("event")
        if not event:
            raise ValueError("Webhook payload is missing 'event'")

        data = payload.get("data") or {}
        item = data.get("item") or {}
        account = data.get("account") or {}
        return cls(
            event=event,
            item_id=item.get("id") or payload.get("itemId"),
            account_id=account.get("id") or payload.get("accountId"),
        )


@dataclass
class WebhookResult:
    event: str
    handled: bool
    local_id: str | None = None
    detail: str | None = None


class WebhookService:
    """Dispatch aggregator webhook events."""

    def __init__(self, service: OpenFinanceService):
        self._service = service

    def handle(self, db: Session, payload: dict) -> WebhookResult:
        event = WebhookEvent.from_payload(payload)
        logger.info(
            "Webhook %s (item %s, account %s)",
            event.event, event.item_id or "-", event.account_id or "-",
        )

        if event.event in ITEM_EVENTS:
            return self._item_event(db, event)
        if event.event == "item/deleted":
            return self._item_deleted(db, event)
        if event.event == "transactions/created":
            return self._transactions_created(db, event)
        if event.event == "transactions/deleted":
            # The event does not say which transactions went away
            logger.info("Transactions deleted upstream; a manual sync will reconcile")
            return WebhookResult(event.event, handled=False, detail="manual sync required")

        logger.info("Ignoring unhandled webhook event %s", event.event)
        return WebhookResult(event.event, handled=False, detail="unhandled event")

    def _connection(self, db: Session, event: WebhookEvent) -> Connection | None:
        if not event.item_id:
            return None
        conn = ConnectionRegistry.get_by_connection_id(db, event.item_id)
        if conn is None:
            logger.warning("Webhook %s for unknown item %s", event.event, event.item_id)
        return conn

    def _item_event(self, db: Session, event: WebhookEvent) -> WebhookResult:
        conn = self._connection(db, event)
        if conn is None:
            return WebhookResult(event.event, handled=False, detail="unknown item")

        client = self._service.client_for(conn.aggregator)
        try:
            item = client.get_item(conn.connection_id)
        except AggregatorError as e:
            raise AggregatorUnavailableError(f"Could not fetch item {conn.connection_id}: {e}") from e

        try:
            ConnectionRegistry.record_item(db, conn, item)
        except InvalidStatusTransition as e:
            # Events can arrive late; a status behind the stored one is ignored
            logger.info("Ignoring stale webhook %s for %s: %s", event.event, conn.id, e)
            return WebhookResult(
                event.event, handled=False, local_id=conn.id, detail="stale status"
            )
        db.commit()

        if event.event == "item/updated" and item.status == ConnectionStatus.UPDATED:
            result = SyncReconciler(client).reconcile(
                db, conn.id, self._service.date_range(), item=item
            )
            db.commit()
            return WebhookResult(
                event.event,
                handled=True,
                local_id=conn.id,
                detail=f"{result.transactions_saved} transactions saved",
            )
        return WebhookResult(event.event, handled=True, local_id=conn.id, detail=conn.status)

    def _item_deleted(self, db: Session, event: WebhookEvent) -> WebhookResult:
        conn = self._connection(db, event)
        if conn is None:
            return WebhookResult(event.event, handled=False, detail="unknown item")
        local_id = conn.id
        ConnectionRegistry.delete_connection(db, local_id)
        db.commit()
        return WebhookResult(event.event, handled=True, local_id=local_id)

    def _transactions_created(self, db: Session, event: WebhookEvent) -> WebhookResult:
        conn = None
        if event.account_id:
            account = (
                db.query(BankAccount)
                .filter(BankAccount.external_id == event.account_id)
                .first()
            )
            if account is not None:
                conn = account.connection
        if conn is None:
            conn = self._connection(db, event)
        if conn is None:
            return WebhookResult(event.event, handled=False, detail="unknown account")

        result = SyncReconciler(self._service.client_for(conn.aggregator)).reconcile(
            db, conn.id, self._service.date_range()
        )
        db.commit()
        return WebhookResult(
            event.event,
            handled=True,
            local_id=conn.id,
            detail=f"{result.transactions_saved} transactions saved",
        )
