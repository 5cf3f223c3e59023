"""Credential submitter - normalize, validate and submit institution logins.

Institutions describe their login fields at runtime (see
:class:`~integrations.aggregator_protocol.CredentialField`), so forms are
checked generically against that description rather than per institution.
"""

import logging
import re

from integrations.aggregator_protocol import AggregatorClient, AggregatorItem, CredentialField
from integrations.exceptions import AggregatorError
from services.errors import AggregatorUnavailableError, LocalValidationError

logger = logging.getLogger(__name__)

# Brazilian tax ids (CPF/CNPJ) are typed with punctuation but sent as digits.
_TAX_ID_MARKERS = ("cpf", "cnpj", "document")
_NON_DIGITS = re.compile(r"\D")


def is_tax_id_field(field: CredentialField) -> bool:
    haystack = f"{field.name} {field.label}".lower()
    return any(marker in haystack for marker in _TAX_ID_MARKERS)


def _matches(pattern: str, value: str) -> bool:
    try:
        return re.search(pattern, value) is not None
    except re.error:
        logger.warning("Ignoring invalid validation pattern %r", pattern)
        return True


class CredentialService:
    """Credential Submitter for new connections."""

    def __init__(self, client: AggregatorClient):
        self._client = client

    @staticmethod
    def normalize(
        fields: list[CredentialField], credentials: dict[str, str]
    ) -> dict[str, str]:
        """Return a copy of ``credentials`` ready to send.

        Tax-id fields lose everything but digits. Other values are trimmed,
        except passwords, which are sent exactly as typed.
        """
        by_name = {f.name: f for f in fields}
        normalized = {}
        for name, value in credentials.items():
            value = "" if value is None else str(value)
            spec = by_name.get(name)
            if spec is not None and is_tax_id_field(spec):
                value = _NON_DIGITS.sub("", value)
            elif spec is None or spec.type != "password":
                value = value.strip()
            normalized[name] = value
        return normalized

    @staticmethod
    def validate(
        fields: list[CredentialField],
        normalized: dict[str, str],
        raw: dict[str, str] | None = None,
    ) -> None:
        """Check required fields and format patterns.

        A value passes its pattern if either the normalized or the raw
        (as typed) value matches, since institutions are inconsistent about
        whether their regex expects punctuation.

        Raises:
            LocalValidationError: With one message per failing field.
        """
        raw = raw or {}
        errors: dict[str, str] = {}
        for field in fields:
            value = normalized.get(field.name, "")
            if not value:
                if not field.optional:
                    errors[field.name] = f"{field.label} is required"
                continue
            if field.validation:
                original = str(raw.get(field.name, value))
                if not (_matches(field.validation, value) or _matches(field.validation, original)):
                    errors[field.name] = (
                        field.validation_message or f"Invalid format for {field.label}"
                    )
        if errors:
            raise LocalValidationError(errors)

    def get_fields(self, institution_id: str) -> list[CredentialField]:
        try:
            return self._client.get_institution(institution_id).credentials
        except AggregatorError as e:
            raise AggregatorUnavailableError(
                f"Could not load login fields for institution {institution_id}: {e}",
                retriable=getattr(e, "retriable", True),
            ) from e

    def submit(
        self,
        institution_id: str,
        credentials: dict[str, str],
        fields: list[CredentialField] | None = None,
        product_filter: list[str] | None = None,
        client_user_id: str | None = None,
    ) -> AggregatorItem:
        """Validate ``credentials`` and open a connection at the aggregator.

        Fields are fetched from the aggregator when not given.

        Raises:
            LocalValidationError: Before any create call is made.
            AggregatorUnavailableError: If the aggregator call fails.
        """
        if fields is None:
            fields = self.get_fields(institution_id)

        normalized = self.normalize(fields, credentials)
        self.validate(fields, normalized, credentials)

        try:
            item = self._client.create_item(
                institution_id,
                normalized,
                products=product_filter,
                client_user_id=client_user_id,
            )
        except AggregatorError as e:
            raise AggregatorUnavailableError(
                f"Could not create connection: {e}",
                retriable=getattr(e, "retriable", True),
            ) from e

        logger.info(
            "Credentials submitted for institution %s: item %s (%s)",
            institution_id, item.id, item.status.value,
        )
        return item
