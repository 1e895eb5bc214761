from abc import ABC, abstractmethod
from typing import Dict, Any


class GatewayStatus:
    def __init__(self, settled: bool, evidence: Dict[str, Any]):
        self.settled = settled
        self.evidence = evidence


class BaseGateway(ABC):
    """Abstract base for payment gateways we can ask "has this been paid?"."""

    @abstractmethod
    async def check_transaction(self, fingerprint: str) -> GatewayStatus:
        """
        Ask the gateway whether the payload identified by ``fingerprint`` settled.
        Raises GatewayError when the gateway cannot be reached or answers garbage.
        """
        pass

    @property
    @abstractmethod
    def gateway_name(self) -> str:
        pass
