"""
Non-payment enforcement.

For an issued, unpaid invoice:

    due date -> grace window of G days -> cancel threshold (due + G)

A cancellation warning fires once in ``[threshold - W days, threshold)`` and
the configured action (suspend or cancel) fires once at or after the
threshold. Both are gated by compare-and-set flags on the billing cycle, so
any number of scheduler passes produce each effect at most once.

The external tenant orchestrator is told about suspensions, cancellations
and reactivations on a best-effort basis: a failed call is logged and the
subscription change stands. A cycle that never produced an invoice is not
enforced; it belongs to the retry engine. A suspension is only lifted
automatically once every finalized cycle of the tenant is paid.
"""

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from tenant_billing.storage.models import BillingCycle, Invoice
from tenant_billing.storage.repository import BillingRepository

from .errors import ReasonCode
from .events import EventPublisher, EventType, make_event, publish_safely
from .policy import TenantPolicyService

logger = logging.getLogger(__name__)

DEFAULT_ORCHESTRATOR_TIMEOUT = 5.0


class TenantOrchestratorClient(Protocol):
    def suspend_tenant(self, tenant_id: str, timeout: float) -> None:
        ...

    def cancel_tenant(self, tenant_id: str, timeout: float) -> None:
        ...

    def reactivate_tenant(self, tenant_id: str, timeout: float) -> None:
        ...

    def notify_payment_success(self, payload: Dict[str, str], timeout: float) -> None:
        ...


class RecordingOrchestratorClient:
    """Orchestrator client that records calls. Used by tests and the demo."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[Tuple[str, str]] = []
        self.confirmations: List[Dict[str, str]] = []

    def _call(self, action: str, tenant_id: str) -> None:
        if self.fail:
            raise ConnectionError(f"orchestrator unavailable for {action}")
        self.calls.append((action, tenant_id))

    def suspend_tenant(self, tenant_id: str, timeout: float) -> None:
        self._call("suspend", tenant_id)

    def cancel_tenant(self, tenant_id: str, timeout: float) -> None:
        self._call("cancel", tenant_id)

    def reactivate_tenant(self, tenant_id: str, timeout: float) -> None:
        self._call("reactivate", tenant_id)

    def notify_payment_success(self, payload: Dict[str, str], timeout: float) -> None:
        if self.fail:
            raise ConnectionError("orchestrator unavailable for payment_success")
        self.confirmations.append(dict(payload))


class EnforcementOutcome(Enum):
    PAID = "PAID"
    REACTIVATED = "REACTIVATED"
    NOT_DUE = "NOT_DUE"
    IN_GRACE = "IN_GRACE"
    WARNED = "WARNED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    ALREADY_SUSPENDED = "ALREADY_SUSPENDED"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    NO_INVOICE = "NO_INVOICE"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    CYCLE_NOT_FOUND = "CYCLE_NOT_FOUND"


class NonPaymentEnforcer:

    def __init__(
        self,
        repository: BillingRepository,
        policies: TenantPolicyService,
        orchestrator: TenantOrchestratorClient,
        publisher: EventPublisher,
        timeout: float = DEFAULT_ORCHESTRATOR_TIMEOUT,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.policies = policies
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.timeout = timeout
        self.clock = clock

    def evaluate(self, tenant_id: str, cycle_id: str, today: Optional[date] = None) -> EnforcementOutcome:
        """Run one enforcement pass for a tenant's cycle.

        Args:
            tenant_id: Tenant identifier
            cycle_id: Billing cycle whose invoice is checked
            today: Evaluation date, defaults to the clock's date

        Returns:
            What this pass found or did
        """
        today = today or self.clock().date()
        cycle = self.repository.get_cycle(cycle_id)
        if cycle is None or cycle.tenant_id != tenant_id:
            return EnforcementOutcome.CYCLE_NOT_FOUND
        subscription = self.repository.get_subscription(tenant_id)
        if subscription is None:
            return EnforcementOutcome.NO_SUBSCRIPTION

        policy = self.policies.policy_for(tenant_id)
        invoice = self.repository.get_invoice_for_cycle(cycle.id)

        if self._is_paid(invoice):
            if (
                subscription.suspended
                and not subscription.cancelled
                and policy.auto_reactivate
                and not self.unpaid_finalized_cycles(tenant_id)
            ):
                if self.reactivate(tenant_id, cycle.id):
                    return EnforcementOutcome.REACTIVATED
            return EnforcementOutcome.PAID

        if cycle.finalized:
            return EnforcementOutcome.ALREADY_FINALIZED
        if invoice is None:
            return EnforcementOutcome.NO_INVOICE

        due = invoice.due_at.date()
        if today <= due:
            return EnforcementOutcome.NOT_DUE

        threshold = due + timedelta(days=policy.grace_days)
        if today < threshold:
            warn_from = threshold - timedelta(days=policy.warning_days)
            if policy.warning_days > 0 and today >= warn_from:
                if self.repository.mark_warning_emitted(cycle.id, self.clock()):
                    logger.info(
                        "Cancellation warning tenant=%s cycle=%s threshold=%s", tenant_id, cycle.id, threshold
                    )
                    publish_safely(self.publisher, make_event(
                        EventType.CANCELLATION_WARNING, tenant_id, cycle.id,
                        {"due_date": due.isoformat(), "cancel_threshold": threshold.isoformat()},
                    ))
                    return EnforcementOutcome.WARNED
            return EnforcementOutcome.IN_GRACE

        if not self.repository.mark_finalized(cycle.id, self.clock()):
            return EnforcementOutcome.ALREADY_FINALIZED
        if policy.cancel_instead_of_suspend:
            return self._cancel(tenant_id, cycle.id)
        return self._suspend(tenant_id, cycle.id)

    def _is_paid(self, invoice: Optional[Invoice]) -> bool:
        if invoice is None:
            return False
        payment = self.repository.find_successful_payment(invoice.id)
        return payment is not None and not payment.reversed

    def unpaid_finalized_cycles(self, tenant_id: str) -> List[BillingCycle]:
        """Cycles of the tenant that reached the enforcement threshold and are still unpaid."""
        return [
            cycle for cycle in self.repository.list_cycles(tenant_id=tenant_id)
            if cycle.finalized and not self._is_paid(self.repository.get_invoice_for_cycle(cycle.id))
        ]

    def _suspend(self, tenant_id: str, cycle_id: str) -> EnforcementOutcome:
        now = self.clock()
        with self.repository.lock_tenant(tenant_id):
            current = self.repository.get_subscription(tenant_id)
            if current is None:
                return EnforcementOutcome.NO_SUBSCRIPTION
            if current.cancelled:
                return EnforcementOutcome.ALREADY_CANCELLED
            if current.suspended:
                return EnforcementOutcome.ALREADY_SUSPENDED
            self.repository.save_subscription(replace(
                current,
                suspended=True,
                suspended_reason=ReasonCode.NON_PAYMENT_GRACE_EXPIRED.value,
                suspended_at=now,
            ))
        logger.warning("Service suspended for non-payment tenant=%s cycle=%s", tenant_id, cycle_id)
        self._notify_orchestrator("suspend", tenant_id, self.orchestrator.suspend_tenant)
        publish_safely(self.publisher, make_event(
            EventType.SERVICE_SUSPENDED, tenant_id, cycle_id, {"reason": ReasonCode.NON_PAYMENT_GRACE_EXPIRED.value},
        ))
        return EnforcementOutcome.SUSPENDED

    def _cancel(self, tenant_id: str, cycle_id: str) -> EnforcementOutcome:
        now = self.clock()
        with self.repository.lock_tenant(tenant_id):
            current = self.repository.get_subscription(tenant_id)
            if current is None:
                return EnforcementOutcome.NO_SUBSCRIPTION
            if current.cancelled:
                return EnforcementOutcome.ALREADY_CANCELLED
            self.repository.save_subscription(replace(
                current,
                cancelled=True,
                cancelled_reason=ReasonCode.NON_PAYMENT_GRACE_EXPIRED.value,
                cancelled_at=now,
            ))
        logger.warning("Subscription cancelled for non-payment tenant=%s cycle=%s", tenant_id, cycle_id)
        self._notify_orchestrator("cancel", tenant_id, self.orchestrator.cancel_tenant)
        publish_safely(self.publisher, make_event(
            EventType.SUBSCRIPTION_CANCELLED, tenant_id, cycle_id, {"reason": ReasonCode.NON_PAYMENT_GRACE_EXPIRED.value},
        ))
        return EnforcementOutcome.CANCELLED

    def reactivate(self, tenant_id: str, cycle_id: Optional[str] = None) -> bool:
        """Lift a suspension. Returns False (no-op) if the tenant is not suspended."""
        now = self.clock()
        with self.repository.lock_tenant(tenant_id):
            current = self.repository.get_subscription(tenant_id)
            if current is None or not current.suspended or current.cancelled:
                return False
            self.repository.save_subscription(replace(
                current,
                suspended=False,
                suspended_reason=None,
                suspended_at=None,
                reactivated_at=now,
            ))
        logger.info("Service reactivated tenant=%s cycle=%s", tenant_id, cycle_id)
        self._notify_orchestrator("reactivate", tenant_id, self.orchestrator.reactivate_tenant)
        publish_safely(self.publisher, make_event(
            EventType.SERVICE_REACTIVATED, tenant_id, cycle_id, {}, discriminator=now.isoformat(),
        ))
        return True

    def _notify_orchestrator(self, action: str, tenant_id: str, call: Callable[[str, float], None]) -> None:
        try:
            call(tenant_id, self.timeout)
        except Exception as e:
            logger.error("Orchestrator %s failed tenant=%s: %s", action, tenant_id, e)
