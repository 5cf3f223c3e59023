"""Challenge router - decides what a WAITING_INPUT connection needs.

Institutions signal an OAuth hand-off inconsistently: some set the
parameter ``type`` to "oauth", others only use a marker ``name``. Either is
treated as sufficient. Everything else is a one-time code or value typed by
the user (MFA).

Every function here is pure: the challenge payload fetched while polling
carries all the information needed, so routing never hits the network.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from integrations.aggregator_protocol import ChallengeParameter
from models import Connection
from models.enums import ChallengeKind, ConnectionStatus
from services.errors import ChallengeStateError

logger = logging.getLogger(__name__)

OAUTH_TYPE = "oauth"
OAUTH_NAME_MARKERS = frozenset({"oauth_code", "oauthCode"})

MISSING_OAUTH_URL = "could not obtain authentication link"


@dataclass(frozen=True)
class MFAFieldSpec:
    """What to ask the user for, passed through from the challenge."""

    name: str | None
    label: str | None
    type: str | None = None
    placeholder: str | None = None
    assistive_text: str | None = None
    validation: str | None = None
    validation_message: str | None = None
    optional: bool = False
    data: Any = None  # e.g. a QR code image for app-based tokens
    expires_at: datetime | None = None


@dataclass(frozen=True)
class OpenOAuth:
    url: str


@dataclass(frozen=True)
class PromptMFA:
    field_spec: MFAFieldSpec
    connection_id: str


@dataclass(frozen=True)
class Fail:
    reason: str


Action = OpenOAuth | PromptMFA | Fail


def classify_challenge(parameter: ChallengeParameter) -> ChallengeKind:
    """OAUTH if either the type or the name carries an OAuth marker, else MFA."""
    if (parameter.type or "").lower() == OAUTH_TYPE:
        return ChallengeKind.OAUTH
    if parameter.name in OAUTH_NAME_MARKERS:
        return ChallengeKind.OAUTH
    return ChallengeKind.MFA


def extract_oauth_url(parameter: ChallengeParameter) -> str | None:
    """Pull the authentication URL out of ``data``.

    ``data`` is either ``{"url": ...}`` or the URL string itself. Only
    absolute http(s) URLs are accepted.
    """
    data = parameter.data
    if isinstance(data, dict):
        url = data.get("url")
    elif isinstance(data, str):
        url = data
    else:
        url = None

    if not isinstance(url, str):
        return None
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return url


def challenge_record(parameter: ChallengeParameter) -> dict:
    """The JSON stored as a connection's ``pending_challenge``."""
    return {"kind": classify_challenge(parameter).value, "payload": parameter.raw}


def route_challenge(connection_id: str, parameter: ChallengeParameter) -> Action:
    """Map a challenge parameter to the continuation that handles it."""
    if classify_challenge(parameter) is ChallengeKind.OAUTH:
        url = extract_oauth_url(parameter)
        if url is None:
            logger.warning("OAuth challenge for %s carries no usable URL", connection_id)
            return Fail(MISSING_OAUTH_URL)
        return OpenOAuth(url)

    return PromptMFA(
        field_spec=MFAFieldSpec(
            name=parameter.name,
            label=parameter.label,
            type=parameter.type,
            placeholder=parameter.placeholder,
            assistive_text=parameter.assistive_text,
            validation=parameter.validation,
            validation_message=parameter.validation_message,
            optional=parameter.optional,
            data=parameter.data,
            expires_at=parameter.expires_at,
        ),
        connection_id=connection_id,
    )


def stored_parameter(connection: Connection) -> ChallengeParameter:
    """Rebuild the pending challenge parameter of a WAITING_INPUT connection.

    Raises:
        ChallengeStateError: If no challenge is pending.
    """
    challenge = connection.pending_challenge
    if connection.status != ConnectionStatus.WAITING_INPUT.value or not challenge:
        raise ChallengeStateError(f"Connection {connection.id} has no pending challenge")
    return ChallengeParameter.from_payload(challenge.get("payload") or {})


def route(connection: Connection) -> Action:
    """Route the challenge stored on a WAITING_INPUT connection."""
    return route_challenge(connection.connection_id, stored_parameter(connection))
