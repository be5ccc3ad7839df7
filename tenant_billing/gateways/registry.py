import logging
from typing import Dict, List

from tenant_billing.core.errors import UnknownProviderError

from .base import PaymentGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Explicit provider name -> gateway mapping. Names are case-insensitive."""

    def __init__(self):
        self._gateways: Dict[str, PaymentGateway] = {}

    def register(self, name: str, gateway: PaymentGateway) -> None:
        self._gateways[name.lower()] = gateway
        logger.debug("Registered payment gateway %s", name)

    def get(self, name: str) -> PaymentGateway:
        gateway = self._gateways.get((name or "").lower())
        if gateway is None:
            raise UnknownProviderError(f"Unsupported payment gateway: {name}")
        return gateway

    def names(self) -> List[str]:
        return sorted(self._gateways)

    def __contains__(self, name: str) -> bool:
        return (name or "").lower() in self._gateways
