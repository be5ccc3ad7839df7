"""
Tenant policy.

The renewal evaluator and the non-payment enforcer ask a ``TenantPolicy`` every
business question (is the contract still valid, should this reason fail
terminally, suspend or cancel, ...). ``ConfiguredPolicyService`` answers them
from the YAML configuration.
"""

from datetime import date, timedelta
from enum import Enum
from typing import Optional, Protocol, Tuple

from tenant_billing.config.loader import EngineConfig, PolicyConfig
from tenant_billing.storage.models import BillingCycle, Subscription

from .errors import ReasonCode


class RenewalMode(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    MIXED = "mixed"


class TenantPolicy(Protocol):
    grace_days: int
    warning_days: int
    cancel_instead_of_suspend: bool
    auto_reactivate: bool

    def contract_valid(self, subscription: Subscription, cycle: BillingCycle) -> bool:
        ...

    def plan_eligible(self, subscription: Subscription) -> bool:
        ...

    def within_usage_limits(self, subscription: Subscription, usage_units: int) -> bool:
        ...

    def allows_manual_renewal(self) -> bool:
        ...

    def is_pre_approved(self) -> bool:
        ...

    def must_fail_on_reason(self, reason: ReasonCode) -> bool:
        ...

    def requires_payment(self, mode: RenewalMode) -> bool:
        ...

    def next_period(self, cycle_end: date) -> Tuple[date, date]:
        ...


class TenantPolicyService(Protocol):
    def policy_for(self, tenant_id: str) -> TenantPolicy:
        ...


def add_months(value: date, months: int) -> date:
    """Same day ``months`` later, clamped to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    next_month_first = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month_first - timedelta(days=1)).day
    return date(year, month, min(value.day, last_day))


class ConfiguredPolicy:
    """TenantPolicy backed by a ``PolicyConfig``."""

    def __init__(self, config: PolicyConfig):
        self.config = config

    @property
    def grace_days(self) -> int:
        return self.config.grace_days

    @property
    def warning_days(self) -> int:
        return self.config.warning_days

    @property
    def cancel_instead_of_suspend(self) -> bool:
        return self.config.cancel_instead_of_suspend

    @property
    def auto_reactivate(self) -> bool:
        return self.config.auto_reactivate

    def contract_valid(self, subscription: Subscription, cycle: BillingCycle) -> bool:
        # The contract has to run past the cycle being renewed.
        return subscription.contract_end is None or subscription.contract_end > cycle.period_end

    def plan_eligible(self, subscription: Subscription) -> bool:
        return subscription.plan_code not in self.config.ineligible_plans

    def within_usage_limits(self, subscription: Subscription, usage_units: int) -> bool:
        return self.config.usage_limit is None or usage_units <= self.config.usage_limit

    def allows_manual_renewal(self) -> bool:
        return self.config.allow_manual_renewal

    def is_pre_approved(self) -> bool:
        return self.config.pre_approved

    def must_fail_on_reason(self, reason: ReasonCode) -> bool:
        return reason.value in self.config.fail_on_reasons

    def requires_payment(self, mode: RenewalMode) -> bool:
        return mode.value in self.config.payment_required_modes

    def next_period(self, cycle_end: date) -> Tuple[date, date]:
        start = cycle_end + timedelta(days=1)
        end = add_months(start, self.config.renewal_period_months) - timedelta(days=1)
        return start, end


class ConfiguredPolicyService:

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def policy_for(self, tenant_id: str) -> TenantPolicy:
        return ConfiguredPolicy(self.config.policy_for(tenant_id))
