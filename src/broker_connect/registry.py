"""Broker Registry.

Read-only lookup over the static broker catalog.
"""

from typing import Iterable, Optional

from src.broker_connect.config import BROKER_CATALOG, BrokerDescriptor, BrokerFeature
from src.broker_connect.exceptions import UnknownBrokerError


class BrokerRegistry:
    """Catalog of supported brokers.

    Example:
        registry = BrokerRegistry()
        zerodha = registry.find_broker("zerodha")
        streaming = registry.brokers_with(BrokerFeature.LIVE_DATA)
    """

    def __init__(self, brokers: Optional[Iterable[BrokerDescriptor]] = None):
        catalog = BROKER_CATALOG if brokers is None else tuple(brokers)
        self._brokers: dict[str, BrokerDescriptor] = {b.id: b for b in catalog}

    def list_brokers(self) -> list[BrokerDescriptor]:
        """Get all active brokers in catalog order."""
        return [b for b in self._brokers.values() if b.is_active]

    def find_broker(self, broker_id: str) -> Optional[BrokerDescriptor]:
        """Get a broker descriptor, or None if unknown."""
        return self._brokers.get(broker_id)

    def get_broker(self, broker_id: str) -> BrokerDescriptor:
        """Get a broker descriptor.

        Raises:
            UnknownBrokerError: If the id is not in the catalog.
        """
        broker = self.find_broker(broker_id)
        if broker is None:
            raise UnknownBrokerError(broker_id)
        return broker

    def brokers_with(self, feature: BrokerFeature) -> list[BrokerDescriptor]:
        """Get active brokers supporting a feature."""
        return [b for b in self.list_brokers() if b.features.supports(feature)]

    def display_name(self, broker_id: str) -> str:
        broker = self.find_broker(broker_id)
        return broker.display_name if broker else broker_id

    def __contains__(self, broker_id: object) -> bool:
        return broker_id in self._brokers

    def __len__(self) -> int:
        return len(self._brokers)
