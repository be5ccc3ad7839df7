"""
Billing cycle scheduling and shard runs.

``schedule_cycles`` creates one SCHEDULED cycle per tenant and period and is
safe to call repeatedly. ``run_shard`` bills the pending tenants of one shard,
keeping a failure of one tenant from stopping the others.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from tenant_billing.storage.models import BillingCycle, CycleStatus
from tenant_billing.storage.repository import BillingRepository, new_id

from .errors import InvalidCycleWindow
from .orchestrator import BillingCycleOrchestrator, CycleOutcome
from .policy import RenewalMode
from .renewal import RenewalEvaluator
from .sharding import ShardPlan

logger = logging.getLogger(__name__)


def monthly_period(reference: date) -> Tuple[date, date]:
    """First and last day of the calendar month containing ``reference``."""
    last_day = calendar.monthrange(reference.year, reference.month)[1]
    return reference.replace(day=1), reference.replace(day=last_day)


@dataclass
class ShardRunReport:
    shard_id: int
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    errored: Dict[str, str] = field(default_factory=dict)


class CycleScheduler:

    def __init__(
        self,
        repository: BillingRepository,
        orchestrator: BillingCycleOrchestrator,
        renewal: Optional[RenewalEvaluator] = None,
        renewal_mode: RenewalMode = RenewalMode.AUTOMATIC
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.renewal = renewal
        self.renewal_mode = renewal_mode

    def schedule_cycles(self, tenant_ids: Iterable[str], period_start: date, period_end: date) -> List[BillingCycle]:
        """Create SCHEDULED cycles for the period.

        Returns:
            The cycle of every tenant for the period, newly created or existing

        Raises:
            InvalidCycleWindow: If the period ends before it starts
        """
        if period_end < period_start:
            raise InvalidCycleWindow(f"Period ends before it starts: {period_start} > {period_end}")
        cycles = []
        created = 0
        for tenant_id in sorted(set(tenant_ids)):
            cycle = BillingCycle(
                id=new_id("cyc"),
                tenant_id=tenant_id,
                period_start=period_start,
                period_end=period_end,
                status=CycleStatus.SCHEDULED,
            )
            if self.repository.create_cycle(cycle):
                created += 1
            cycles.append(self.repository.find_cycle_for_period(tenant_id, period_start, period_end))
        logger.info("Scheduled %d new cycle(s) for %s..%s", created, period_start, period_end)
        return cycles

    def run_tenant(self, tenant_id: str) -> List[CycleOutcome]:
        """Bill every SCHEDULED cycle of a tenant, oldest first."""
        outcomes = []
        for cycle in self.repository.list_cycles(tenant_id=tenant_id, statuses=(CycleStatus.SCHEDULED,)):
            result = self.orchestrator.run(tenant_id, cycle.id)
            outcomes.append(result.outcome)
            if result.completed and self.renewal is not None:
                self.renewal.evaluate(tenant_id, cycle.id, self.renewal_mode)
        return outcomes

    def run_shard(self, plan: ShardPlan, shard_id: int) -> ShardRunReport:
        """Bill the unprocessed tenants of one shard.

        A tenant whose run raises is left unmarked so a resumed worker
        picks it up again.
        """
        report = ShardRunReport(shard_id=shard_id)
        for tenant_id in plan.pending(shard_id):
            try:
                outcomes = self.run_tenant(tenant_id)
            except Exception as e:
                logger.exception("Shard %d: tenant=%s errored", shard_id, tenant_id)
                report.errored[tenant_id] = f"{type(e).__name__}: {e}"
                continue
            plan.mark_processed(shard_id, tenant_id)
            if CycleOutcome.FAILED in outcomes:
                report.failed[tenant_id] = CycleOutcome.FAILED.value
            elif CycleOutcome.COMPLETED in outcomes:
                report.completed.append(tenant_id)
            else:
                report.skipped.append(tenant_id)
        logger.info(
            "Shard %d done completed=%d failed=%d skipped=%d errored=%d",
            shard_id, len(report.completed), len(report.failed), len(report.skipped), len(report.errored),
        )
        return report
