"""Typed exception hierarchy for aggregator errors.

Provides structured exceptions for differentiated error handling
(auth errors vs transient network errors vs data issues).
"""


class AggregatorError(Exception):
    """Base exception for all aggregator-related errors.

    Carries the aggregator name so callers can identify which one failed.
    """

    def __init__(self, message: str, aggregator_name: str = ""):
        self.aggregator_name = aggregator_name
        super().__init__(message)


class AggregatorAuthError(AggregatorError):
    """Client credentials missing, expired, or invalid (HTTP 401/403)."""

    pass


class AggregatorConnectionError(AggregatorError):
    """Network failures such as timeouts or refused connections.

    Retriable by default.
    """

    def __init__(self, message: str, aggregator_name: str = "", retriable: bool = True):
        self.retriable = retriable
        super().__init__(message, aggregator_name)


class AggregatorAPIError(AggregatorError):
    """HTTP 4xx/5xx responses from the aggregator API.

    ``detail`` is the aggregator's own human-readable message when the
    error body carried one.
    """

    def __init__(
        self,
        message: str,
        aggregator_name: str = "",
        status_code: int | None = None,
        detail: str | None = None,
    ):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message, aggregator_name)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class AggregatorDataError(AggregatorError):
    """Malformed or unparseable response from the aggregator."""

    pass
