# tenant_billing/demo/seed_demo_data.py

from datetime import date, datetime, timedelta
from decimal import Decimal

from tenant_billing.config.loader import EngineConfig
from tenant_billing.core.engine import build_engine
from tenant_billing.core.scheduler import monthly_period
from tenant_billing.storage.models import Plan, PaymentToken, Subscription, TaxRule
from tenant_billing.storage.repository import get_repository, initialize_schema

initialize_schema()
repository = get_repository()

config = EngineConfig(
    plans={
        "starter": Plan(code="starter", plan_type="BASIC", amount=Decimal("49.00")),
        "premium": Plan(code="premium", plan_type="PREMIUM", amount=Decimal("1000.00")),
    },
    tax_rules=(
        TaxRule(jurisdiction_key="CO-PREMIUM", rate=Decimal("0.19"), name="IVA"),
        TaxRule(jurisdiction_key="US-BASIC", rate=Decimal("0.07"), name="sales"),
    ),
)
engine = build_engine(repository, config)

period_start, period_end = monthly_period(date.today() - timedelta(days=date.today().day))

subscriptions = [
    Subscription(
        tenant_id="acme",
        plan_code="premium",
        tier="gold",
        country_code="CO",
        contract_end=None,
        current_period_start=period_start,
        current_period_end=period_end,
    ),
    Subscription(
        tenant_id="globex",
        plan_code="starter",
        tier="standard",
        country_code="US",
        contract_end=None,
        current_period_start=period_start,
        current_period_end=period_end,
    ),
]

for subscription in subscriptions:
    repository.save_subscription(subscription)
    repository.save_token(PaymentToken(
        id=f"tok_{subscription.tenant_id}",
        tenant_id=subscription.tenant_id,
        encrypted_payload="sandbox-payload",
        expires_at=datetime.now() + timedelta(days=365),
        gateway_provider="sandbox",
    ))

cycles = engine.scheduler.schedule_cycles([s.tenant_id for s in subscriptions], period_start, period_end)
for cycle in cycles:
    result = engine.orchestrator.run(cycle.tenant_id, cycle.id)
    print(f"{cycle.tenant_id}: {result.outcome.value} {result.invoice.total_amount if result.invoice else ''}")

print("Demo billing data inserted")
