"""
Data models for storage layer.

Defines the billing entities persisted by the repository. Records are frozen;
state changes go through the repository and return fresh instances.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class CycleStatus(Enum):
    """Lifecycle of a billing cycle."""
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_EXHAUSTED = "FAILED_EXHAUSTED"


class InvoiceStatus(Enum):
    GENERATED = "GENERATED"
    SIGNED = "SIGNED"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class NotificationStatus(Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DEAD = "DEAD"


@dataclass(frozen=True)
class BillingCycle:
    """A bounded period over which one tenant is charged.

    Scheduled -> InProgress -> Completed | Failed, and
    Failed -> InProgress (retry) | FailedExhausted.
    """
    id: str
    tenant_id: str
    period_start: date
    period_end: date
    status: CycleStatus = CycleStatus.SCHEDULED
    retry_count: int = 0
    invoice_id: Optional[str] = None
    payment_id: Optional[str] = None
    warning_emitted: bool = False
    warning_emitted_at: Optional[datetime] = None
    finalized: bool = False
    finalized_at: Optional[datetime] = None
    last_error: Optional[str] = None
    renewal_status: Optional[str] = None
    renewal_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Plan:
    """Priced plan resolved for a subscription."""
    code: str
    plan_type: str
    amount: Decimal
    currency: str = "USD"


@dataclass(frozen=True)
class BillingRequest:
    """Ephemeral calculation context for one pipeline run. Never persisted."""
    tenant_id: str
    cycle_id: str
    plan: Plan
    country_code: str
    usage_start: Optional[date] = None
    usage_end: Optional[date] = None
    usage_units: int = 0


@dataclass(frozen=True)
class Invoice:
    """Fiscal document for one billing cycle. Exactly one per cycle."""
    id: str
    tenant_id: str
    cycle_id: str
    base_amount: Decimal
    prorated_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    issued_at: datetime
    due_at: datetime
    status: InvoiceStatus = InvoiceStatus.GENERATED
    currency: str = "USD"
    usage_units: int = 0
    signed: bool = False
    signature_timestamp: Optional[datetime] = None
    signature_format: Optional[str] = None
    signature_value: Optional[str] = None


@dataclass(frozen=True)
class PaymentToken:
    """Tokenised payment instrument."""
    id: str
    tenant_id: str
    encrypted_payload: str
    expires_at: datetime
    gateway_provider: str
    revoked: bool = False
    reusable: bool = True


@dataclass(frozen=True)
class PaymentAttempt:
    """One entry of a payment result's attempt log."""
    at: datetime
    outcome: str
    detail: str = ""


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of one payment initiation for an invoice.

    Created Pending, then mutated once to Success or Failed. The reversal
    marker is recorded separately by the reversal operation.
    """
    id: str
    tenant_id: str
    cycle_id: str
    invoice_id: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    attempts: int = 1
    attempt_log: Tuple[PaymentAttempt, ...] = ()
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    recoverable: bool = False
    gateway_provider: Optional[str] = None
    reversed: bool = False
    reversal_reason: Optional[str] = None
    reversal_actor: Optional[str] = None
    reversed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_success(self) -> bool:
        return self.status == PaymentStatus.SUCCESS


@dataclass(frozen=True)
class Subscription:
    """A tenant's plan subscription and lifecycle flags."""
    tenant_id: str
    plan_code: str
    tier: str
    country_code: str
    contract_end: Optional[date]
    current_period_start: date
    current_period_end: date
    last_renewed_cycle_id: Optional[str] = None
    suspended: bool = False
    suspended_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    cancelled: bool = False
    cancelled_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    reactivated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.suspended and not self.cancelled


@dataclass(frozen=True)
class TaxRule:
    """Tax rate for a jurisdiction key ``"<country>-<planType>"``."""
    jurisdiction_key: str
    rate: Decimal
    name: str = "tax"


@dataclass(frozen=True)
class NotificationRecord:
    """Outbox entry for a tenant notification."""
    id: str
    tenant_id: str
    kind: str
    payload: str
    cycle_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    dedupe_key: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class OperationLogEntry:
    """Audit record of one billing step."""
    tenant_id: str
    cycle_id: str
    step: str
    outcome: str
    detail: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CycleFilter:
    """Audit query filter for billing cycles. Unset fields do not filter."""
    tenant_id: Optional[str] = None
    statuses: Tuple[CycleStatus, ...] = ()
    period_from: Optional[date] = None
    period_to: Optional[date] = None


@dataclass(frozen=True)
class InvoiceFilter:
    """Audit query filter for invoices. Unset fields do not filter."""
    tenant_id: Optional[str] = None
    statuses: Tuple[InvoiceStatus, ...] = ()
    issued_from: Optional[datetime] = None
    issued_to: Optional[datetime] = None
    min_total: Optional[Decimal] = None


@dataclass
class Page:
    """One page of an audit query."""
    items: List = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size
