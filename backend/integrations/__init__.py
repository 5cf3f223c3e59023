"""External API integrations.

This package contains:
- Aggregator protocol: normalized shapes and the client interface
- Pluggy client: Integration with the Pluggy Open Finance API
- Typed exceptions shared by every aggregator client
"""

from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorClient,
    AggregatorItem,
    AggregatorTransaction,
    ChallengeParameter,
    CredentialField,
    DateRange,
    Institution,
)
from integrations.pluggy_client import PluggyClient

__all__ = [
    "AggregatorAccount",
    "AggregatorClient",
    "AggregatorItem",
    "AggregatorTransaction",
    "ChallengeParameter",
    "CredentialField",
    "DateRange",
    "Institution",
    "PluggyClient",
]
