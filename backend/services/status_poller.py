"""Status poller - waits for a connection to settle at the aggregator.

The aggregator is eventually consistent, so after submitting credentials or
answering a challenge we poll the connection until it reaches a terminal
status or asks for user input, bounded by an attempt count.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from integrations.aggregator_protocol import AggregatorClient, AggregatorItem
from integrations.exceptions import AggregatorError
from models.enums import ConnectionStatus

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """The connection reached a terminal or actionable status."""

    item: AggregatorItem
    attempts: int

    @property
    def status(self) -> ConnectionStatus:
        return self.item.status


@dataclass
class TimedOut:
    """Attempts ran out while the aggregator was still processing.

    Not an error: the caller should tell the user and allow a manual
    refresh later. ``last_item`` is None if every fetch failed.
    """

    last_status: ConnectionStatus | None
    attempts: int
    last_item: AggregatorItem | None = None


def is_settled(item: AggregatorItem) -> bool:
    """Whether polling can stop at this observation."""
    if item.status.is_terminal:
        return True
    return item.status == ConnectionStatus.WAITING_INPUT and item.has_challenge


class StatusPoller:
    """Bounded poll loop over ``get_item``.

    Args:
        client: Aggregator client to read status from.
        sleep: Called with seconds between attempts; injectable for tests.
    """

    def __init__(
        self,
        client: AggregatorClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._sleep = sleep

    def poll(
        self, connection_id: str, max_attempts: int, interval_ms: int
    ) -> PollResult | TimedOut:
        """Fetch status up to ``max_attempts`` times, ``interval_ms`` apart.

        A failed fetch counts as an attempt and does not end the loop.
        Never sleeps after the final attempt.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if interval_ms < 0:
            raise ValueError("interval_ms must not be negative")

        last_item: AggregatorItem | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                item = self._client.get_item(connection_id)
            except AggregatorError as e:
                logger.warning(
                    "Poll %d/%d for %s failed: %s",
                    attempt, max_attempts, connection_id, e,
                )
            else:
                last_item = item
                logger.debug(
                    "Poll %d/%d for %s: %s",
                    attempt, max_attempts, connection_id, item.status.value,
                )
                if is_settled(item):
                    return PollResult(item=item, attempts=attempt)

            if attempt < max_attempts:
                self._sleep(interval_ms / 1000)

        last_status = last_item.status if last_item is not None else None
        logger.info(
            "Polling %s timed out after %d attempts (last status %s)",
            connection_id, max_attempts,
            last_status.value if last_status else "unknown",
        )
        return TimedOut(last_status=last_status, attempts=max_attempts, last_item=last_item)
