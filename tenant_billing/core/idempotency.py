"""
Idempotency guard for billing cycles.

Claiming and completing a cycle both run under the same per-(tenant, cycle)
lock and are compare-and-set status updates, so a concurrent or re-fired run
that sees IN_PROGRESS, COMPLETED or FAILED_EXHAUSTED backs off without side
effects.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tenant_billing.storage.models import BillingCycle, CycleStatus
from tenant_billing.storage.repository import BillingRepository

logger = logging.getLogger(__name__)

CLAIMABLE = (CycleStatus.SCHEDULED, CycleStatus.FAILED)


@dataclass(frozen=True)
class Claim:
    """Result of a claim attempt. ``cycle`` is None when the cycle does not exist."""
    acquired: bool
    cycle: Optional[BillingCycle]
    observed: Optional[CycleStatus] = None


class IdempotencyGuard:

    def __init__(self, repository: BillingRepository):
        self.repository = repository

    def claim(self, tenant_id: str, cycle_id: str) -> Claim:
        """Move the cycle to IN_PROGRESS if it is SCHEDULED or FAILED."""
        with self.repository.lock_cycle(tenant_id, cycle_id):
            current = self.repository.get_cycle(cycle_id)
            if current is None or current.tenant_id != tenant_id:
                return Claim(acquired=False, cycle=None)
            if current.status not in CLAIMABLE:
                logger.info(
                    "Cycle not claimable tenant=%s cycle=%s status=%s",
                    tenant_id, cycle_id, current.status.value,
                )
                return Claim(acquired=False, cycle=current, observed=current.status)
            claimed = self.repository.transition_cycle(cycle_id, CLAIMABLE, CycleStatus.IN_PROGRESS)
            if claimed is None:
                latest = self.repository.get_cycle(cycle_id)
                return Claim(acquired=False, cycle=latest, observed=latest.status if latest else None)
            return Claim(acquired=True, cycle=claimed, observed=current.status)

    def complete(self, tenant_id: str, cycle_id: str, invoice_id: str, payment_id: str) -> Optional[BillingCycle]:
        """Mark an IN_PROGRESS cycle COMPLETED with its invoice and payment references."""
        with self.repository.lock_cycle(tenant_id, cycle_id):
            return self.repository.transition_cycle(
                cycle_id,
                (CycleStatus.IN_PROGRESS,),
                CycleStatus.COMPLETED,
                invoice_id=invoice_id,
                payment_id=payment_id,
                last_error=None,
                completed_at=datetime.now(),
            )

    def fail(
        self,
        tenant_id: str,
        cycle_id: str,
        error_code: str,
        count_retry: bool = False,
        invoice_id: Optional[str] = None
    ) -> Optional[BillingCycle]:
        """Mark an IN_PROGRESS cycle FAILED, optionally consuming one retry."""
        fields = {"last_error": error_code, "retry_increment": 1 if count_retry else 0}
        if invoice_id:
            fields["invoice_id"] = invoice_id
        with self.repository.lock_cycle(tenant_id, cycle_id):
            return self.repository.transition_cycle(
                cycle_id, (CycleStatus.IN_PROGRESS,), CycleStatus.FAILED, **fields
            )

    def exhaust(self, tenant_id: str, cycle_id: str) -> Optional[BillingCycle]:
        """Mark a FAILED cycle FAILED_EXHAUSTED. Returns None if it was not FAILED."""
        with self.repository.lock_cycle(tenant_id, cycle_id):
            return self.repository.transition_cycle(
                cycle_id, (CycleStatus.FAILED,), CycleStatus.FAILED_EXHAUSTED
            )
