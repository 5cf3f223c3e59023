"""Aggregator registry for the Open Finance aggregators a connection can use.

Each connection records the aggregator that brokered it, so syncs and
challenges must go back to the same one. The registry resolves that name to
a configured client.
"""

import importlib
import logging

from integrations.aggregator_protocol import AggregatorClient

logger = logging.getLogger(__name__)

# Each tuple is (aggregator_name, module_path, class_name).
AGGREGATOR_DEFINITIONS: list[tuple[str, str, str]] = [
    ("Pluggy", "integrations.pluggy_client", "PluggyClient"),
    ("Belvo", "integrations.belvo_client", "BelvoClient"),
]

ALL_AGGREGATOR_NAMES: list[str] = [name for name, _, _ in AGGREGATOR_DEFINITIONS]


class AggregatorRegistry:
    """Configured aggregator clients, by name.

    Example:
        registry = get_aggregator_registry()
        if registry.is_configured("Belvo"):
            client = registry.get_aggregator("Belvo")
            item = client.get_item(link_id)
    """

    def __init__(self):
        self._aggregators: dict[str, AggregatorClient] = {}

    def register_aggregator(self, client: AggregatorClient) -> None:
        self._aggregators[client.aggregator_name] = client

    def get_aggregator(self, name: str) -> AggregatorClient:
        """Get a client by aggregator name.

        Raises:
            ValueError: If the aggregator is not registered/configured.
        """
        if name not in self._aggregators:
            raise ValueError(f"Aggregator '{name}' is not configured")
        return self._aggregators[name]

    def list_aggregators(self) -> list[str]:
        return list(self._aggregators.keys())

    def is_configured(self, name: str) -> bool:
        return name in self._aggregators

    def initialize_default_aggregators(self) -> None:
        """Register every known aggregator that has credentials configured."""
        for name, module_path, class_name in AGGREGATOR_DEFINITIONS:
            module = importlib.import_module(module_path)
            self._try_init_aggregator(name, getattr(module, class_name))

        names = self.list_aggregators()
        if names:
            logger.info("Active aggregators: %s", ", ".join(names))
        else:
            logger.warning("No aggregators configured")

    def _try_init_aggregator(self, name: str, cls: type) -> None:
        try:
            instance = cls()
            if instance.is_configured():
                self.register_aggregator(instance)
                logger.info("Aggregator registered: %s", name)
            else:
                logger.debug("Aggregator skipped (not configured): %s", name)
        except Exception:
            logger.warning("Aggregator failed to initialize: %s", name, exc_info=True)


def get_aggregator_registry() -> AggregatorRegistry:
    """Create a registry with every configured aggregator registered."""
    registry = AggregatorRegistry()
    registry.initialize_default_aggregators()
    return registry
