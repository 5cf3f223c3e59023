"""MFA continuation - validate and forward a one-time code to the aggregator."""

import logging
import re

from sqlalchemy.orm import Session

from integrations.aggregator_protocol import AggregatorClient, AggregatorItem
from integrations.exceptions import AggregatorAPIError, AggregatorError
from models import Connection
from models.enums import ChallengeKind
from services.challenge_router import MFAFieldSpec, PromptMFA, route, stored_parameter
from services.connection_registry import ConnectionRegistry
from services.errors import (
    AggregatorUnavailableError,
    ChallengeRejectedError,
    ChallengeStateError,
    LocalValidationError,
)

logger = logging.getLogger(__name__)


class ChallengeValidationError(LocalValidationError):
    """The value does not match the challenge's declared format."""

    pass


def validate_challenge_value(field_spec: MFAFieldSpec, value: str) -> str:
    """Check ``value`` against the challenge before it leaves the device.

    Returns:
        The value with surrounding whitespace removed.

    Raises:
        ChallengeValidationError: With a field-level message.
    """
    name = field_spec.name or "value"
    value = (value or "").strip()
    if not value:
        if field_spec.optional:
            return value
        raise ChallengeValidationError({name: f"{field_spec.label or name} is required"})

    if field_spec.validation:
        try:
            matched = re.search(field_spec.validation, value) is not None
        except re.error:
            logger.warning(
                "Ignoring invalid validation pattern for challenge field %s", name
            )
            matched = True
        if not matched:
            message = field_spec.validation_message or f"Invalid format for {field_spec.label or name}"
            raise ChallengeValidationError({name: message})
    return value


class MFAContinuation:
    """Submit a user's answer to a pending MFA challenge."""

    def __init__(self, client: AggregatorClient):
        self._client = client

    def submit(self, db: Session, connection: Connection, value: str) -> AggregatorItem:
        """Validate ``value`` locally, send it, and record the new status.

        Raises:
            ChallengeStateError: If no MFA challenge is pending.
            ChallengeValidationError: If the value fails local validation.
                Nothing is sent to the aggregator.
            ChallengeRejectedError: If the aggregator refused the value. The
                connection stays at WAITING_INPUT so the user can retry.
            AggregatorUnavailableError: If the aggregator could not be reached
                or failed with a rate limit or server error.
        """
        action = route(connection)
        if not isinstance(action, PromptMFA):
            raise ChallengeStateError(
                f"Connection {connection.id} is waiting for {ChallengeKind.OAUTH.value}, not a code"
            )

        field_spec = action.field_spec
        value = validate_challenge_value(field_spec, value)

        try:
            item = self._client.send_mfa(
                connection.connection_id,
                {field_spec.name or "token": value},
                challenge=stored_parameter(connection),
            )
        except AggregatorAPIError as e:
            if e.retriable:
                raise AggregatorUnavailableError(str(e), retriable=True) from e
            logger.info(
                "Challenge answer rejected for connection %s: %s",
                connection.id, e.detail or e,
            )
            raise ChallengeRejectedError(e.detail or "The code was not accepted") from e
        except AggregatorError as e:
            raise AggregatorUnavailableError(str(e)) from e

        logger.info(
            "Challenge answer accepted for connection %s (status %s)",
            connection.id, item.status.value,
        )
        ConnectionRegistry.record_item(db, connection, item)
        return item
