"""Enumerations shared by the ORM models and the aggregator client."""

from enum import Enum


class ConnectionStatus(str, Enum):
    """Lifecycle status of a connection as reported by the aggregator."""

    CREATED = "CREATED"  # submitted, not yet processed
    UPDATING = "UPDATING"  # processing, poll again
    UPDATED = "UPDATED"  # data ready
    WAITING_INPUT = "WAITING_INPUT"  # challenge required
    LOGIN_ERROR = "LOGIN_ERROR"
    OUTDATED = "OUTDATED"

    @property
    def is_terminal(self) -> bool:
        """No further automatic progress happens without user action."""
        return self in TERMINAL_STATUSES

    @property
    def is_fatal(self) -> bool:
        """The user must re-enter credentials."""
        return self in (ConnectionStatus.LOGIN_ERROR, ConnectionStatus.OUTDATED)


TERMINAL_STATUSES = frozenset(
    {ConnectionStatus.UPDATED, ConnectionStatus.LOGIN_ERROR, ConnectionStatus.OUTDATED}
)


class ExecutionStatus(str, Enum):
    """Outcome of the aggregator's last data-collection run."""

    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    ERROR = "ERROR"


class ChallengeKind(str, Enum):
    OAUTH = "OAUTH"
    MFA = "MFA"


class AccountKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    CREDIT = "CREDIT"


class MovementKind(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SETTLED = "SETTLED"
