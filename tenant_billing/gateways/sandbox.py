import hashlib
import threading
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from tenant_billing.core.errors import GatewayTimeout
from tenant_billing.storage.models import PaymentToken

from .base import GatewayDeclined


class SandboxGateway:
    """Deterministic in-process gateway for tests and demos.

    Nothing is slept: a configured ``latency`` greater than the caller's
    timeout raises ``GatewayTimeout`` straight away.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.declined_tenants: Dict[str, Tuple[str, bool]] = {}
        self.rejected_tokens: Set[str] = set()
        self.fail_reversals = False
        self.charges: List[Tuple[str, str, Decimal, str]] = []
        self.reversals: List[str] = []
        self._lock = threading.Lock()

    def decline(self, tenant_id: str, code: str = "card_declined", recoverable: bool = False) -> None:
        self.declined_tenants[tenant_id] = (code, recoverable)

    def _check_latency(self, timeout: float, operation: str) -> None:
        if self.latency > timeout:
            raise GatewayTimeout(f"Sandbox {operation} exceeded {timeout}s")

    def process_payment(
        self, token: PaymentToken, amount: Decimal, tenant_id: str, invoice_id: str, timeout: float
    ) -> str:
        self._check_latency(timeout, "charge")
        if tenant_id in self.declined_tenants:
            code, recoverable = self.declined_tenants[tenant_id]
            raise GatewayDeclined(f"Charge declined for {tenant_id}", code=code, recoverable=recoverable)
        with self._lock:
            sequence = len(self.charges) + 1
            transaction_id = "txn_" + hashlib.sha256(f"{invoice_id}:{sequence}".encode("utf-8")).hexdigest()[:24]
            self.charges.append((tenant_id, invoice_id, amount, transaction_id))
        return transaction_id

    def validate_token(self, token: PaymentToken, timeout: float) -> bool:
        self._check_latency(timeout, "token validation")
        return token.id not in self.rejected_tokens

    def reverse_payment(self, transaction_id: str, amount: Decimal, timeout: float) -> None:
        self._check_latency(timeout, "reversal")
        if self.fail_reversals:
            raise GatewayDeclined(f"Reversal refused for {transaction_id}", code="reversal_refused", recoverable=True)
        with self._lock:
            self.reversals.append(transaction_id)

    def charge_count(self, invoice_id: Optional[str] = None) -> int:
        with self._lock:
            if invoice_id is None:
                return len(self.charges)
            return sum(1 for charge in self.charges if charge[1] == invoice_id)
