"""
Bounded retry of failed billing cycles.

There is no in-process backoff: a failed cycle waits for the next sweep.
Each sweep either re-runs a FAILED cycle through the full pipeline or, once
its ``retry_count`` has reached ``max_retries``, moves it to
FAILED_EXHAUSTED and emits ``billing_retries_exhausted``. A cycle completed
by a retry goes through renewal like one completed on schedule.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from tenant_billing.storage.models import CycleStatus
from tenant_billing.storage.repository import BillingRepository

from .errors import ReasonCode
from .events import EventPublisher, EventType, make_event, publish_safely
from .idempotency import IdempotencyGuard
from .orchestrator import BillingCycleOrchestrator, CycleOutcome
from .policy import RenewalMode
from .renewal import RenewalEvaluator

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


@dataclass
class RetrySweepReport:
    """Cycle ids handled by one sweep, by result."""
    retried: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.retried) + len(self.exhausted) + len(self.skipped)


class RetryEngine:

    def __init__(
        self,
        repository: BillingRepository,
        orchestrator: BillingCycleOrchestrator,
        publisher: EventPublisher,
        max_retries: int = DEFAULT_MAX_RETRIES,
        renewal: Optional[RenewalEvaluator] = None,
        renewal_mode: RenewalMode = RenewalMode.AUTOMATIC
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.repository = repository
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.guard = IdempotencyGuard(repository)
        self.max_retries = max_retries
        self.renewal = renewal
        self.renewal_mode = renewal_mode

    def sweep(self, tenant_id: Optional[str] = None, limit: int = 1000) -> RetrySweepReport:
        """Process every FAILED cycle once."""
        report = RetrySweepReport()
        for cycle in self.repository.list_cycles(tenant_id=tenant_id, statuses=(CycleStatus.FAILED,), limit=limit):
            if cycle.retry_count >= self.max_retries:
                if self.guard.exhaust(cycle.tenant_id, cycle.id) is None:
                    report.skipped.append(cycle.id)
                    continue
                logger.error(
                    "Billing retries exhausted tenant=%s cycle=%s retries=%d last_error=%s",
                    cycle.tenant_id, cycle.id, cycle.retry_count, cycle.last_error,
                )
                publish_safely(self.publisher, make_event(
                    EventType.BILLING_RETRIES_EXHAUSTED, cycle.tenant_id, cycle.id,
                    {
                        "reason": ReasonCode.RETRIES_EXHAUSTED.value,
                        "retry_count": str(cycle.retry_count),
                        "last_error": cycle.last_error or "",
                    },
                ))
                report.exhausted.append(cycle.id)
                continue

            result = self.orchestrator.run(cycle.tenant_id, cycle.id, count_retry=True)
            if result.outcome == CycleOutcome.SKIPPED:
                report.skipped.append(cycle.id)
                continue
            report.retried.append(cycle.id)
            if result.outcome == CycleOutcome.COMPLETED:
                report.completed.append(cycle.id)
                if self.renewal is not None:
                    self.renewal.evaluate(cycle.tenant_id, cycle.id, self.renewal_mode)
            else:
                report.failed.append(cycle.id)
        logger.info(
            "Retry sweep done retried=%d completed=%d exhausted=%d skipped=%d",
            len(report.retried), len(report.completed), len(report.exhausted), len(report.skipped),
        )
        return report
