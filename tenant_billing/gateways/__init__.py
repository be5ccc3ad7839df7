"""Payment gateway protocol, provider registry and the sandbox gateway."""

from .base import GatewayDeclined, PaymentGateway
from .registry import GatewayRegistry
from .sandbox import SandboxGateway

__all__ = ["GatewayDeclined", "GatewayRegistry", "PaymentGateway", "SandboxGateway"]
