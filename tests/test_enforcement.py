"""
Tests for non-payment enforcement.

The conftest cycle ends 2024-01-31 with 10 days of payment terms, so an
unpaid invoice is due 2024-02-10. With 7 grace days and 3 warning days the
warning window is [02-14, 02-17) and the cancel threshold is 02-17.
"""

import logging
from dataclasses import replace
from datetime import date
from unittest.mock import MagicMock

import pytest

from tenant_billing.config.loader import EngineConfig, PolicyConfig
from tenant_billing.core.enforcement import EnforcementOutcome, NonPaymentEnforcer, RecordingOrchestratorClient
from tenant_billing.core.events import EventType, InMemoryEventPublisher
from tenant_billing.core.policy import ConfiguredPolicyService
from tenant_billing.storage.models import BillingCycle
from tenant_billing.storage.repository import new_id

from conftest import seed_tenant


@pytest.fixture
def unpaid_cycle(engine, repository, gateway):
    """A cycle whose invoice exists but whose charge was declined."""
    cycle = seed_tenant(repository, "acme")
    gateway.decline("acme", recoverable=True)
    engine.orchestrator.run("acme", cycle.id)
    gateway.declined_tenants.clear()
    return cycle


def february_cycle(repository, tenant_id="acme"):
    """A second cycle for the tenant, due 2024-03-10 once invoiced."""
    cycle = BillingCycle(
        id=new_id("cyc"), tenant_id=tenant_id, period_start=date(2024, 2, 1), period_end=date(2024, 2, 29)
    )
    repository.create_cycle(cycle)
    return cycle


class TestGraceWindow:
    """Test the timeline before the cancel threshold."""

    def test_not_due(self, engine, unpaid_cycle):
        assert engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 10)) == EnforcementOutcome.NOT_DUE

    def test_in_grace_before_warning(self, engine, unpaid_cycle):
        assert engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 13)) == EnforcementOutcome.IN_GRACE
        assert engine.publisher.of_type(EventType.CANCELLATION_WARNING) == []

    def test_warning_emitted_once(self, engine, repository, unpaid_cycle):
        first = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 14))
        second = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 15))
        third = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 16))

        assert first == EnforcementOutcome.WARNED
        assert second == third == EnforcementOutcome.IN_GRACE
        assert len(engine.publisher.of_type(EventType.CANCELLATION_WARNING)) == 1
        assert repository.get_cycle(unpaid_cycle.id).warning_emitted

    def test_cycle_without_invoice_is_not_enforced(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        assert engine.enforcement.evaluate("acme", cycle.id, date(2024, 2, 1)) == EnforcementOutcome.NO_INVOICE
        assert engine.enforcement.evaluate("acme", cycle.id, date(2024, 6, 1)) == EnforcementOutcome.NO_INVOICE
        assert not repository.get_cycle(cycle.id).warning_emitted

    def test_signing_failure_never_suspends(self, engine, repository, tenant_orchestrator):
        """A cycle that failed before issuing its invoice is not a debt of the tenant."""
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.signer = MagicMock()
        engine.orchestrator.signer.sign.side_effect = RuntimeError("cert expired")
        engine.orchestrator.run("acme", cycle.id)

        outcome = engine.enforcement.evaluate("acme", cycle.id, date(2024, 2, 20))

        assert outcome == EnforcementOutcome.NO_INVOICE
        assert not repository.get_subscription("acme").suspended
        assert tenant_orchestrator.calls == []


class TestThreshold:
    """Test suspension and cancellation at the threshold."""

    def test_suspends_once(self, engine, repository, unpaid_cycle, tenant_orchestrator):
        first = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))
        second = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 20))

        assert first == EnforcementOutcome.SUSPENDED
        assert second == EnforcementOutcome.ALREADY_FINALIZED
        subscription = repository.get_subscription("acme")
        assert subscription.suspended
        assert subscription.suspended_reason == "NON_PAYMENT_GRACE_EXPIRED"
        assert tenant_orchestrator.calls == [("suspend", "acme")]
        assert len(engine.publisher.of_type(EventType.SERVICE_SUSPENDED)) == 1

    def test_cancel_instead_of_suspend(self, engine, repository, unpaid_cycle):
        orchestrator = RecordingOrchestratorClient()
        publisher = InMemoryEventPublisher()
        policies = ConfiguredPolicyService(EngineConfig(
            policy_defaults=PolicyConfig(grace_days=7, warning_days=3, cancel_instead_of_suspend=True)
        ))
        enforcer = NonPaymentEnforcer(repository, policies, orchestrator, publisher)

        outcome = enforcer.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))

        assert outcome == EnforcementOutcome.CANCELLED
        subscription = repository.get_subscription("acme")
        assert subscription.cancelled and not subscription.suspended
        assert orchestrator.calls == [("cancel", "acme")]
        assert len(publisher.of_type(EventType.SUBSCRIPTION_CANCELLED)) == 1

    def test_orchestrator_failure_is_logged(self, engine, repository, unpaid_cycle, tenant_orchestrator, caplog):
        tenant_orchestrator.fail = True

        with caplog.at_level(logging.ERROR, logger="tenant_billing.core.enforcement"):
            outcome = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))

        assert outcome == EnforcementOutcome.SUSPENDED
        assert repository.get_subscription("acme").suspended
        assert "Orchestrator suspend failed" in caplog.text

    def test_unknown_cycle(self, engine):
        assert engine.enforcement.evaluate("ghost", "cyc_missing", date(2024, 3, 1)) == EnforcementOutcome.CYCLE_NOT_FOUND

    def test_second_unpaid_cycle_reports_already_suspended(self, engine, repository, gateway, unpaid_cycle,
                                                           tenant_orchestrator):
        engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))
        second = february_cycle(repository)
        gateway.decline("acme", recoverable=True)
        engine.orchestrator.run("acme", second.id)

        outcome = engine.enforcement.evaluate("acme", second.id, date(2024, 3, 17))

        assert outcome == EnforcementOutcome.ALREADY_SUSPENDED
        assert repository.get_cycle(second.id).finalized
        assert tenant_orchestrator.calls == [("suspend", "acme")]
        assert len(engine.publisher.of_type(EventType.SERVICE_SUSPENDED)) == 1

    def test_cancelled_tenant_reports_already_cancelled(self, engine, repository, unpaid_cycle, tenant_orchestrator):
        repository.save_subscription(replace(repository.get_subscription("acme"), cancelled=True))

        outcome = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))

        assert outcome == EnforcementOutcome.ALREADY_CANCELLED
        assert not repository.get_subscription("acme").suspended
        assert tenant_orchestrator.calls == []


class TestPaidAndReactivation:
    """Test that paid invoices are never enforced."""

    def test_paid_invoice(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.run("acme", cycle.id)
        assert engine.enforcement.evaluate("acme", cycle.id, date(2024, 3, 1)) == EnforcementOutcome.PAID
        assert not repository.get_subscription("acme").suspended

    def test_payment_after_suspension_reactivates(self, engine, repository, unpaid_cycle, tenant_orchestrator):
        engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))
        engine.orchestrator.run("acme", unpaid_cycle.id, count_retry=True)

        outcome = engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 18))

        assert outcome == EnforcementOutcome.REACTIVATED
        subscription = repository.get_subscription("acme")
        assert not subscription.suspended
        assert subscription.reactivated_at is not None
        assert tenant_orchestrator.calls == [("suspend", "acme"), ("reactivate", "acme")]
        assert len(engine.publisher.of_type(EventType.SERVICE_REACTIVATED)) == 1

    def test_no_auto_reactivation(self, engine, repository, unpaid_cycle):
        policies = ConfiguredPolicyService(EngineConfig(policy_defaults=PolicyConfig(auto_reactivate=False)))
        enforcer = NonPaymentEnforcer(repository, policies, RecordingOrchestratorClient(), InMemoryEventPublisher())
        enforcer.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))
        engine.orchestrator.run("acme", unpaid_cycle.id, count_retry=True)

        assert enforcer.evaluate("acme", unpaid_cycle.id, date(2024, 2, 18)) == EnforcementOutcome.PAID
        assert repository.get_subscription("acme").suspended

    def test_reactivate_is_noop_when_active(self, engine, repository):
        seed_tenant(repository, "acme")
        assert engine.enforcement.reactivate("acme") is False

    def test_reversed_payment_is_unpaid(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        paid = engine.orchestrator.run("acme", cycle.id).payment
        engine.payments.reverse_transaction(paid.transaction_id, "chargeback", "ops")

        assert engine.enforcement.evaluate("acme", cycle.id, date(2024, 2, 17)) == EnforcementOutcome.SUSPENDED

    def test_cancelled_tenant_is_not_reactivated(self, engine, repository, unpaid_cycle):
        repository.save_subscription(replace(repository.get_subscription("acme"), suspended=True, cancelled=True))
        assert engine.enforcement.reactivate("acme") is False

    def test_paying_another_cycle_keeps_suspension(self, engine, repository, unpaid_cycle, tenant_orchestrator):
        """Only settling the cycle that caused the suspension lifts it."""
        engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 2, 17))
        later = february_cycle(repository)
        engine.orchestrator.run("acme", later.id)

        outcome = engine.enforcement.evaluate("acme", later.id, date(2024, 3, 1))

        assert outcome == EnforcementOutcome.PAID
        assert repository.get_subscription("acme").suspended
        assert [c.id for c in engine.enforcement.unpaid_finalized_cycles("acme")] == [unpaid_cycle.id]
        assert tenant_orchestrator.calls == [("suspend", "acme")]

        engine.orchestrator.run("acme", unpaid_cycle.id, count_retry=True)

        assert engine.enforcement.evaluate("acme", unpaid_cycle.id, date(2024, 3, 2)) == EnforcementOutcome.REACTIVATED
        assert not repository.get_subscription("acme").suspended
