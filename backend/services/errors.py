"""Errors raised by the open finance core to its callers.

Aggregator transport exceptions never cross this boundary: they are either
absorbed (polling) or converted to :class:`AggregatorUnavailableError`.
"""


class OpenFinanceError(Exception):
    """Base class for errors surfaced to the presentation layer."""

    pass


class LocalValidationError(OpenFinanceError):
    """Input rejected before any network call.

    ``field_errors`` maps field name to a user-facing message.
    """

    def __init__(self, field_errors: dict[str, str]):
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{name}: {msg}" for name, msg in self.field_errors.items())
        super().__init__(f"Invalid input: {summary}")


class ChallengeRejectedError(OpenFinanceError):
    """The aggregator refused a challenge response. The user may retry."""

    retryable = True


class ChallengeStateError(OpenFinanceError):
    """No challenge of the expected kind is pending for the connection."""

    pass


class ConnectionNotFoundError(OpenFinanceError):
    """No registered connection matches the given identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Connection {identifier} not found")


class AggregatorUnavailableError(OpenFinanceError):
    """The aggregator could not be reached or answered with an error."""

    def __init__(self, message: str, retriable: bool = True):
        self.retriable = retriable
        super().__init__(message)
