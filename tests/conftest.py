"""
Shared fixtures: a fresh SQLite database per test and a wired billing engine
using the sandbox gateway, in-memory events and in-memory notifications.
"""

import os
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from tenant_billing.config.loader import BillingConfig, EngineConfig, PolicyConfig
from tenant_billing.core.engine import build_engine
from tenant_billing.core.enforcement import RecordingOrchestratorClient
from tenant_billing.core.events import InMemoryEventPublisher
from tenant_billing.core.notifications import InMemoryChannel
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.gateways.sandbox import SandboxGateway
from tenant_billing.storage.models import BillingCycle, PaymentToken, Plan, Subscription, TaxRule
from tenant_billing.storage.repository import BillingRepository, initialize_schema, new_id

CYCLE_START = date(2024, 1, 1)
CYCLE_END = date(2024, 1, 31)


@pytest.fixture
def db_path():
    """Path to an initialized, throwaway database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "billing.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def repository(db_path):
    return BillingRepository(db_path)


@pytest.fixture
def engine_config():
    return EngineConfig(
        billing=BillingConfig(max_retries=3, payment_terms_days=10),
        plans={
            "premium": Plan(code="premium", plan_type="PREMIUM", amount=Decimal("1000.00")),
            "pro": Plan(code="pro", plan_type="PRO", amount=Decimal("1200.00")),
        },
        tax_rules=(TaxRule(jurisdiction_key="CO-PREMIUM", rate=Decimal("0.19"), name="IVA"),),
        policy_defaults=PolicyConfig(grace_days=7, warning_days=3),
    )


@pytest.fixture
def gateway():
    return SandboxGateway()


@pytest.fixture
def channel():
    return InMemoryChannel()


@pytest.fixture
def tenant_orchestrator():
    return RecordingOrchestratorClient()


@pytest.fixture
def engine(repository, engine_config, gateway, channel, tenant_orchestrator):
    registry = GatewayRegistry()
    registry.register("sandbox", gateway)
    return build_engine(
        repository,
        engine_config,
        publisher=InMemoryEventPublisher(),
        gateways=registry,
        channel=channel,
        tenant_orchestrator=tenant_orchestrator,
    )


def make_subscription(tenant_id: str, plan_code: str = "premium", country_code: str = "CO", **overrides) -> Subscription:
    values = dict(
        tenant_id=tenant_id,
        plan_code=plan_code,
        tier="standard",
        country_code=country_code,
        contract_end=None,
        current_period_start=CYCLE_START,
        current_period_end=CYCLE_END,
    )
    values.update(overrides)
    return Subscription(**values)


def make_token(tenant_id: str, **overrides) -> PaymentToken:
    values = dict(
        id=new_id("tok"),
        tenant_id=tenant_id,
        encrypted_payload="enc:payload",
        expires_at=datetime.now() + timedelta(days=30),
        gateway_provider="sandbox",
    )
    values.update(overrides)
    return PaymentToken(**values)


def seed_tenant(repository: BillingRepository, tenant_id: str, plan_code: str = "premium",
                country_code: str = "CO", with_token: bool = True) -> BillingCycle:
    """Store a subscription (and token) and a SCHEDULED January cycle for a tenant."""
    repository.save_subscription(make_subscription(tenant_id, plan_code, country_code))
    if with_token:
        repository.save_token(make_token(tenant_id))
    cycle = BillingCycle(id=new_id("cyc"), tenant_id=tenant_id, period_start=CYCLE_START, period_end=CYCLE_END)
    repository.create_cycle(cycle)
    return repository.get_cycle(cycle.id)
