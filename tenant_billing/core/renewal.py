"""
Plan renewal state machine.

Decides, per billing cycle, whether a tenant's subscription is RENEWED,
PENDING (re-evaluated on a later pass) or FAILED. Business outcomes are
returned as ``RenewalOutcome`` values, never raised.

Evaluation order:
1. Missing cycle or inactive subscription -> FAILED.
2. Cycle already renewed -> RENEWED, nothing changes.
3. Contract, plan eligibility, usage limits and (if the mode requires it) a
   successful payment; a violation goes to the policy's fail-or-pend choice.
4. Mode rules: AUTOMATIC renews, MANUAL needs policy permission, MIXED needs
   a payment or a pre-approval.
5. Renew under the tenant lock.

Each decision is stored on the cycle. ``sweep`` re-evaluates every tenant's
latest completed cycle whose renewal is still undecided or pending.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple

from tenant_billing.storage.models import BillingCycle, Subscription
from tenant_billing.storage.repository import BillingRepository

from .errors import ReasonCode
from .events import EventPublisher, EventType, make_event, publish_safely
from .policy import RenewalMode, TenantPolicy, TenantPolicyService

logger = logging.getLogger(__name__)


class RenewalDecision(Enum):
    RENEWED = "RENEWED"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RenewalOutcome:
    decision: RenewalDecision
    reason: Optional[ReasonCode] = None
    mode_tag: Optional[str] = None
    period: Optional[Tuple[date, date]] = None


@dataclass
class RenewalSweepReport:
    renewed: List[str] = field(default_factory=list)
    pending: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


class RenewalEvaluator:

    def __init__(self, repository: BillingRepository, policies: TenantPolicyService, publisher: EventPublisher):
        self.repository = repository
        self.policies = policies
        self.publisher = publisher

    def evaluate(self, tenant_id: str, cycle_id: str, mode: RenewalMode = RenewalMode.AUTOMATIC) -> RenewalOutcome:
        cycle = self.repository.get_cycle(cycle_id)
        if cycle is None or cycle.tenant_id != tenant_id:
            return self._failed(tenant_id, cycle_id, ReasonCode.BILLING_CYCLE_NOT_FOUND, mode, record=False)

        subscription = self.repository.get_subscription(tenant_id)
        if subscription is None or not subscription.is_active:
            return self._failed(tenant_id, cycle_id, ReasonCode.SUBSCRIPTION_INACTIVE, mode)

        if subscription.last_renewed_cycle_id == cycle.id:
            return RenewalOutcome(
                RenewalDecision.RENEWED,
                mode_tag=mode.value,
                period=(subscription.current_period_start, subscription.current_period_end),
            )

        policy = self.policies.policy_for(tenant_id)
        paid = self._has_successful_payment(cycle)

        violation = self._violation(cycle, subscription, policy, mode, paid)
        if violation is not None:
            if policy.must_fail_on_reason(violation):
                return self._failed(tenant_id, cycle_id, violation, mode)
            return self._pending(tenant_id, cycle, violation, mode)

        if mode == RenewalMode.MANUAL and not policy.allows_manual_renewal():
            return self._failed(tenant_id, cycle_id, ReasonCode.MANUAL_RENEWAL_NOT_ALLOWED, mode)
        if mode == RenewalMode.MIXED and not (paid or policy.is_pre_approved()):
            return self._pending(tenant_id, cycle, ReasonCode.MIXED_AWAITING_PAYMENT_OR_APPROVAL, mode)

        return self._renew(tenant_id, cycle, policy, mode)

    def sweep(self, mode: RenewalMode = RenewalMode.AUTOMATIC, tenant_id: Optional[str] = None) -> RenewalSweepReport:
        """Evaluate the renewal of every completed cycle still waiting for a decision."""
        report = RenewalSweepReport()
        for cycle in self.repository.renewal_candidates(tenant_id):
            outcome = self.evaluate(cycle.tenant_id, cycle.id, mode)
            if outcome.decision == RenewalDecision.RENEWED:
                report.renewed.append(cycle.id)
            elif outcome.decision == RenewalDecision.PENDING:
                report.pending[cycle.id] = outcome.reason.value
            else:
                report.failed[cycle.id] = outcome.reason.value
        logger.info(
            "Renewal sweep done renewed=%d pending=%d failed=%d",
            len(report.renewed), len(report.pending), len(report.failed),
        )
        return report

    def _violation(
        self,
        cycle: BillingCycle,
        subscription: Subscription,
        policy: TenantPolicy,
        mode: RenewalMode,
        paid: bool
    ) -> Optional[ReasonCode]:
        if not policy.contract_valid(subscription, cycle):
            return ReasonCode.CONTRACT_INVALID
        if not policy.plan_eligible(subscription):
            return ReasonCode.PLAN_NOT_ELIGIBLE
        invoice = self.repository.get_invoice_for_cycle(cycle.id)
        usage_units = invoice.usage_units if invoice else 0
        if not policy.within_usage_limits(subscription, usage_units):
            return ReasonCode.USAGE_LIMIT_EXCEEDED
        if policy.requires_payment(mode) and not paid:
            return ReasonCode.MISSING_SUCCESSFUL_PAYMENT
        return None

    def _has_successful_payment(self, cycle: BillingCycle) -> bool:
        invoice = self.repository.get_invoice_for_cycle(cycle.id)
        if invoice is None:
            return False
        payment = self.repository.find_successful_payment(invoice.id)
        return payment is not None and not payment.reversed

    def _renew(self, tenant_id: str, cycle: BillingCycle, policy: TenantPolicy, mode: RenewalMode) -> RenewalOutcome:
        with self.repository.lock_tenant(tenant_id):
            current = self.repository.get_subscription(tenant_id)
            if current is None or not current.is_active:
                return self._failed(tenant_id, cycle.id, ReasonCode.SUBSCRIPTION_INACTIVE, mode)
            if current.last_renewed_cycle_id == cycle.id:
                return RenewalOutcome(
                    RenewalDecision.RENEWED,
                    mode_tag=mode.value,
                    period=(current.current_period_start, current.current_period_end),
                )
            start, end = policy.next_period(cycle.period_end)
            self.repository.save_subscription(replace(
                current,
                current_period_start=start,
                current_period_end=end,
                last_renewed_cycle_id=cycle.id,
            ))
            self.repository.record_renewal(cycle.id, RenewalDecision.RENEWED.value)

        logger.info("Plan renewed tenant=%s cycle=%s period=%s..%s mode=%s", tenant_id, cycle.id, start, end, mode.value)
        publish_safely(self.publisher, make_event(
            EventType.PLAN_RENEWED, tenant_id, cycle.id,
            {"period_start": start.isoformat(), "period_end": end.isoformat(), "mode": mode.value},
        ))
        return RenewalOutcome(RenewalDecision.RENEWED, mode_tag=mode.value, period=(start, end))

    def _pending(self, tenant_id: str, cycle: BillingCycle, reason: ReasonCode, mode: RenewalMode) -> RenewalOutcome:
        self.repository.record_renewal(cycle.id, RenewalDecision.PENDING.value, reason.value)
        logger.info("Renewal pending tenant=%s cycle=%s reason=%s", tenant_id, cycle.id, reason.value)
        return RenewalOutcome(RenewalDecision.PENDING, reason=reason, mode_tag=mode.value)

    def _failed(
        self,
        tenant_id: str,
        cycle_id: str,
        reason: ReasonCode,
        mode: RenewalMode,
        record: bool = True
    ) -> RenewalOutcome:
        if record:
            self.repository.record_renewal(cycle_id, RenewalDecision.FAILED.value, reason.value)
        logger.warning("Renewal failed tenant=%s cycle=%s reason=%s", tenant_id, cycle_id, reason.value)
        publish_safely(self.publisher, make_event(
            EventType.RENEWAL_FAILED, tenant_id, cycle_id, {"reason": reason.value, "mode": mode.value},
        ))
        return RenewalOutcome(RenewalDecision.FAILED, reason=reason, mode_tag=mode.value)
