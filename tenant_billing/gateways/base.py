from decimal import Decimal
from typing import Protocol

from tenant_billing.storage.models import PaymentToken


class GatewayDeclined(Exception):
    """The gateway answered and refused the operation."""

    def __init__(self, message: str, code: str = "declined", recoverable: bool = False):
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable


class PaymentGateway(Protocol):
    """Narrow gateway interface.

    Implementations raise ``GatewayDeclined`` for refusals and
    ``tenant_billing.core.errors.GatewayTimeout`` when ``timeout`` elapses.
    """

    def process_payment(
        self, token: PaymentToken, amount: Decimal, tenant_id: str, invoice_id: str, timeout: float
    ) -> str:
        """Charge ``amount`` and return the gateway transaction id."""
        ...

    def validate_token(self, token: PaymentToken, timeout: float) -> bool:
        ...

    def reverse_payment(self, transaction_id: str, amount: Decimal, timeout: float) -> None:
        ...
