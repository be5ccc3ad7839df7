"""
Billing cycle orchestration.

Runs one (tenant, cycle) through a fixed pipeline:

1. claim      - idempotency guard moves the cycle to IN_PROGRESS or skips
2. calculate  - plan, usage, proration and tax
3. invoice    - reuse the cycle's invoice or assemble, sign and persist one
4. pay        - charge the invoice total
5. notify     - fire-and-forget tenant notification and payment confirmation
                to the tenant orchestrator, both deduplicated in the outbox
6. complete   - mark the cycle COMPLETED and the invoice PAID

Stages return ``StageResult`` values. Exceptions raised inside a stage are
converted to failure results, and any failure leaves the cycle FAILED for the
retry engine. Already-applied charges are never compensated here; reversal is
a separate operation on ``PaymentOrchestrator``.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from tenant_billing.config.loader import BillingConfig, TimeoutConfig
from tenant_billing.storage.models import (
    BillingCycle,
    BillingRequest,
    Invoice,
    InvoiceStatus,
    OperationLogEntry,
    PaymentResult,
    Plan,
    Subscription,
)
from tenant_billing.storage.repository import BillingRepository

from .errors import BillingError, CollaboratorUnavailable, MissingRequiredField, ReasonCode
from .events import EventPublisher, EventType, make_event, publish_safely
from .idempotency import IdempotencyGuard
from .invoice import InvoiceAmounts, InvoiceSigner, assemble_invoice
from .money import ZERO, round_money
from .notifications import NotificationDispatcher
from .payment import PaymentOrchestrator
from .proration import covers_cycle, prorate
from .tax import TaxRuleSource, apply_tax

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED = "payment_confirmed"


@dataclass(frozen=True)
class UsageReport:
    """Usage of a tenant within a cycle. Unset bounds mean the cycle bounds."""
    units: int = 0
    active_from: Optional[date] = None
    active_to: Optional[date] = None


class UsageSource(Protocol):
    def fetch_usage(self, tenant_id: str, start: date, end: date, timeout: float) -> UsageReport:
        ...


class PricingSource(Protocol):
    def plan_for(self, subscription: Subscription) -> Plan:
        ...


class FullCycleUsage:
    """Usage source reporting every tenant active for the whole cycle."""

    def fetch_usage(self, tenant_id: str, start: date, end: date, timeout: float) -> UsageReport:
        return UsageReport(units=0, active_from=start, active_to=end)


class ConfiguredPricing:
    """Plan prices from configuration, keyed by plan code."""

    def __init__(self, plans: Dict[str, Plan]):
        self.plans = dict(plans)

    def plan_for(self, subscription: Subscription) -> Plan:
        plan = self.plans.get(subscription.plan_code)
        if plan is None:
            raise MissingRequiredField(
                f"No price for plan {subscription.plan_code}", tenant_id=subscription.tenant_id
            )
        return plan


class CycleOutcome(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class StageResult:
    ok: bool
    reason: Optional[ReasonCode] = None
    message: str = ""
    recoverable: bool = False

    @classmethod
    def success(cls, message: str = "") -> "StageResult":
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, reason: ReasonCode, message: str, recoverable: bool = False) -> "StageResult":
        return cls(ok=False, reason=reason, message=message, recoverable=recoverable)


@dataclass
class CycleContext:
    """Values accumulated while one cycle moves through the pipeline."""
    tenant_id: str
    cycle: BillingCycle
    subscription: Optional[Subscription] = None
    request: Optional[BillingRequest] = None
    amounts: Optional[InvoiceAmounts] = None
    invoice: Optional[Invoice] = None
    payment: Optional[PaymentResult] = None


@dataclass(frozen=True)
class CycleRunResult:
    outcome: CycleOutcome
    tenant_id: str
    cycle_id: str
    reason: Optional[ReasonCode] = None
    message: str = ""
    recoverable: bool = False
    invoice: Optional[Invoice] = None
    payment: Optional[PaymentResult] = None

    @property
    def completed(self) -> bool:
        return self.outcome == CycleOutcome.COMPLETED


class BillingCycleOrchestrator:

    def __init__(
        self,
        repository: BillingRepository,
        tax_source: TaxRuleSource,
        pricing: PricingSource,
        usage: UsageSource,
        payments: PaymentOrchestrator,
        signer: InvoiceSigner,
        notifier: NotificationDispatcher,
        publisher: EventPublisher,
        billing: Optional[BillingConfig] = None,
        timeouts: Optional[TimeoutConfig] = None
    ):
        self.repository = repository
        self.guard = IdempotencyGuard(repository)
        self.tax_source = tax_source
        self.pricing = pricing
        self.usage = usage
        self.payments = payments
        self.signer = signer
        self.notifier = notifier
        self.publisher = publisher
        self.billing = billing or BillingConfig()
        self.timeouts = timeouts or TimeoutConfig()
        self.stages: List[Tuple[str, Callable[[CycleContext], StageResult]]] = [
            ("calculate", self._calculate),
            ("invoice", self._invoice),
            ("pay", self._pay),
            ("notify", self._notify),
        ]

    def run(self, tenant_id: str, cycle_id: str, count_retry: bool = False) -> CycleRunResult:
        """Run the billing pipeline for one cycle.

        Args:
            tenant_id: Tenant identifier
            cycle_id: Cycle to bill; must be SCHEDULED, or FAILED when retried
            count_retry: Consume one retry from the cycle's budget on failure

        Returns:
            CycleRunResult. SKIPPED means another run owns or finished the cycle
            and nothing was done.
        """
        claim = self.guard.claim(tenant_id, cycle_id)
        if claim.cycle is None:
            logger.warning("Billing cycle not found tenant=%s cycle=%s", tenant_id, cycle_id)
            return CycleRunResult(
                CycleOutcome.SKIPPED, tenant_id, cycle_id,
                reason=ReasonCode.BILLING_CYCLE_NOT_FOUND, message="cycle not found",
            )
        if not claim.acquired:
            observed = claim.observed.value if claim.observed else "unknown"
            self._log(tenant_id, cycle_id, "claim", "skipped", observed)
            return CycleRunResult(CycleOutcome.SKIPPED, tenant_id, cycle_id, message=f"cycle is {observed}")

        self._log(tenant_id, cycle_id, "claim", "ok", f"from {claim.observed.value}")
        publish_safely(self.publisher, make_event(
            EventType.BILLING_STARTED, tenant_id, cycle_id,
            {"period_start": claim.cycle.period_start.isoformat(), "period_end": claim.cycle.period_end.isoformat()},
        ))

        context = CycleContext(tenant_id=tenant_id, cycle=claim.cycle)
        for name, stage in self.stages:
            result = self._run_stage(name, stage, context)
            self._log(tenant_id, cycle_id, name, "ok" if result.ok else "failed", result.message)
            if not result.ok:
                return self._fail(context, name, result, count_retry)

        completed = self.guard.complete(tenant_id, cycle_id, context.invoice.id, context.payment.id)
        if completed is None:
            # Only reachable if the cycle was moved out of IN_PROGRESS externally.
            logger.error("Could not mark cycle completed tenant=%s cycle=%s", tenant_id, cycle_id)
            self._log(tenant_id, cycle_id, "complete", "failed", "cycle not in progress")
            return CycleRunResult(
                CycleOutcome.FAILED, tenant_id, cycle_id, reason=ReasonCode.UNEXPECTED_ERROR,
                message="cycle not in progress", invoice=context.invoice, payment=context.payment,
            )
        self.repository.update_invoice_status(context.invoice.id, InvoiceStatus.PAID)
        self._log(tenant_id, cycle_id, "complete", "ok", context.invoice.id)
        logger.info(
            "Billing cycle completed tenant=%s cycle=%s invoice=%s payment=%s",
            tenant_id, cycle_id, context.invoice.id, context.payment.id,
        )
        return CycleRunResult(
            CycleOutcome.COMPLETED, tenant_id, cycle_id,
            invoice=self.repository.get_invoice(context.invoice.id), payment=context.payment,
        )

    def _run_stage(self, name: str, stage: Callable[[CycleContext], StageResult], context: CycleContext) -> StageResult:
        try:
            return stage(context)
        except BillingError as e:
            return StageResult.failure(e.reason, str(e), e.recoverable)
        except Exception as e:
            logger.exception(
                "Unexpected error in stage %s tenant=%s cycle=%s", name, context.tenant_id, context.cycle.id
            )
            return StageResult.failure(ReasonCode.UNEXPECTED_ERROR, f"{type(e).__name__}: {e}", True)

    def _fail(self, context: CycleContext, stage: str, result: StageResult, count_retry: bool) -> CycleRunResult:
        invoice_id = context.invoice.id if context.invoice else None
        logger.warning(
            "Billing cycle failed at %s tenant=%s cycle=%s invoice=%s reason=%s recoverable=%s: %s",
            stage, context.tenant_id, context.cycle.id, invoice_id,
            result.reason.value, result.recoverable, result.message,
        )
        self.guard.fail(context.tenant_id, context.cycle.id, result.reason.value, count_retry, invoice_id)
        return CycleRunResult(
            CycleOutcome.FAILED, context.tenant_id, context.cycle.id,
            reason=result.reason, message=result.message, recoverable=result.recoverable,
            invoice=context.invoice, payment=context.payment,
        )

    def _calculate(self, context: CycleContext) -> StageResult:
        existing = self.repository.get_invoice_for_cycle(context.cycle.id)
        if existing is not None:
            context.invoice = existing
            return StageResult.success(f"reusing invoice {existing.id}")

        subscription = self.repository.get_subscription(context.tenant_id)
        if subscription is None or subscription.cancelled:
            return StageResult.failure(ReasonCode.SUBSCRIPTION_INACTIVE, "no active subscription")
        context.subscription = subscription
        plan = self.pricing.plan_for(subscription)

        cycle = context.cycle
        try:
            usage = self.usage.fetch_usage(context.tenant_id, cycle.period_start, cycle.period_end, self.timeouts.usage)
        except (TimeoutError, ConnectionError) as e:
            raise CollaboratorUnavailable(f"Usage source unavailable: {e}", tenant_id=context.tenant_id) from e

        request = BillingRequest(
            tenant_id=context.tenant_id,
            cycle_id=cycle.id,
            plan=plan,
            country_code=subscription.country_code,
            usage_start=usage.active_from,
            usage_end=usage.active_to,
            usage_units=usage.units,
        )
        context.request = request

        if covers_cycle(cycle.period_start, cycle.period_end, request.usage_start, request.usage_end):
            base, prorated = round_money(plan.amount), ZERO
        else:
            base = ZERO
            prorated = prorate(plan.amount, cycle.period_start, cycle.period_end, request.usage_start, request.usage_end)
        tax = apply_tax(self.tax_source, request.country_code, plan.plan_type, base + prorated)
        context.amounts = InvoiceAmounts(
            base=base, prorated=prorated, tax=tax, usage_units=request.usage_units, currency=plan.currency
        )
        return StageResult.success(f"base={base} prorated={prorated} tax={tax}")

    def _invoice(self, context: CycleContext) -> StageResult:
        if context.invoice is None:
            context.invoice = assemble_invoice(
                self.repository,
                self.signer,
                context.tenant_id,
                context.cycle.id,
                context.amounts,
                context.cycle.period_end,
                self.billing.payment_terms_days,
            )
        invoice = context.invoice
        publish_safely(self.publisher, make_event(
            EventType.INVOICE_GENERATED, context.tenant_id, context.cycle.id,
            {"invoice_id": invoice.id, "total": str(invoice.total_amount), "currency": invoice.currency},
        ))
        return StageResult.success(invoice.id)

    def _pay(self, context: CycleContext) -> StageResult:
        invoice = context.invoice
        token = self.repository.get_current_token(context.tenant_id)
        context.payment = self.payments.initiate_payment(
            token, Decimal(invoice.total_amount), context.tenant_id, invoice.id, self.timeouts.gateway
        )
        return StageResult.success(context.payment.id)

    def _notify(self, context: CycleContext) -> StageResult:
        invoice = context.invoice
        payment = context.payment
        record = self.notifier.dispatch(
            "invoice_paid",
            context.tenant_id,
            cycle_id=context.cycle.id,
            invoice_id=invoice.id,
            payload={"invoice_id": invoice.id, "total": str(invoice.total_amount), "currency": invoice.currency},
            dedupe_key=f"invoice_paid:{invoice.id}",
        )
        # At most one tenant orchestrator confirmation per charge.
        self.notifier.dispatch(
            PAYMENT_CONFIRMED,
            context.tenant_id,
            cycle_id=context.cycle.id,
            invoice_id=invoice.id,
            payload={
                "tenant_id": context.tenant_id,
                "cycle_id": context.cycle.id,
                "invoice_id": invoice.id,
                "amount": str(payment.amount),
                "transaction_id": payment.transaction_id or "",
                "confirmed_at": datetime.now().isoformat(),
            },
            dedupe_key="|".join((
                context.tenant_id, context.cycle.id, invoice.id, payment.transaction_id or payment.id,
            )),
        )
        return StageResult.success(record.id if record else "not queued")

    def _log(self, tenant_id: str, cycle_id: str, step: str, outcome: str, detail: str = "") -> None:
        try:
            self.repository.log_operation(OperationLogEntry(
                tenant_id=tenant_id, cycle_id=cycle_id, step=step, outcome=outcome, detail=detail or "",
            ))
        except Exception:
            logger.exception("Could not write operation log tenant=%s cycle=%s step=%s", tenant_id, cycle_id, step)
