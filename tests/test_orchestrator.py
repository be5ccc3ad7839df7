"""
Tests for the billing cycle saga.

Tests the end-to-end pipeline, idempotence, ordering guarantees and failure
handling with the sandbox gateway and in-memory collaborators.
"""

import threading
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

from tenant_billing.core.errors import ReasonCode
from tenant_billing.core.events import EventType
from tenant_billing.core.orchestrator import CycleContext, CycleOutcome, UsageReport
from tenant_billing.storage.models import CycleStatus, InvoiceStatus, NotificationStatus, PaymentStatus

from conftest import seed_tenant


class TestHappyPath:
    """Test a full successful run."""

    def test_full_cycle_with_tax(self, engine, repository, gateway):
        """CO-PREMIUM: 1000.00 base, 190.00 tax, 1190.00 charged."""
        cycle = seed_tenant(repository, "acme")

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.COMPLETED
        assert result.invoice.base_amount == Decimal("1000.00")
        assert result.invoice.prorated_amount == Decimal("0.00")
        assert result.invoice.tax_amount == Decimal("190.00")
        assert result.invoice.total_amount == Decimal("1190.00")
        assert result.invoice.status == InvoiceStatus.PAID
        assert result.payment.status == PaymentStatus.SUCCESS
        assert gateway.charges[0][2] == Decimal("1190.00")

        stored = repository.get_cycle(cycle.id)
        assert stored.status == CycleStatus.COMPLETED
        assert stored.invoice_id == result.invoice.id
        assert stored.payment_id == result.payment.id

    def test_partial_usage_is_prorated(self, engine, repository):
        """1200.00 plan used on days 1-15 of 31, no tax rule for the jurisdiction."""
        cycle = seed_tenant(repository, "beta", plan_code="pro", country_code="US")
        engine.orchestrator.usage = MagicMock()
        engine.orchestrator.usage.fetch_usage.return_value = UsageReport(
            units=10, active_from=date(2024, 1, 1), active_to=date(2024, 1, 15)
        )

        result = engine.orchestrator.run("beta", cycle.id)

        assert result.completed
        assert result.invoice.base_amount == Decimal("0.00")
        assert result.invoice.prorated_amount == Decimal("580.65")
        assert result.invoice.tax_amount == Decimal("0.00")
        assert result.invoice.total_amount == Decimal("580.65")
        assert result.invoice.usage_units == 10

    def test_events_and_operation_log(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.run("acme", cycle.id)

        types = [e.type for e in engine.publisher.events]
        assert types == [
            EventType.BILLING_STARTED,
            EventType.INVOICE_GENERATED,
            EventType.PAYMENT_SUCCESS,
        ]
        assert engine.publisher.events[0].dedupe_key == f"billing_started:acme:{cycle.id}"
        steps = [(e.step, e.outcome) for e in repository.operation_log("acme", cycle.id)]
        assert steps == [
            ("claim", "ok"), ("calculate", "ok"), ("invoice", "ok"),
            ("pay", "ok"), ("notify", "ok"), ("complete", "ok"),
        ]

    def test_tenant_is_notified(self, engine, repository, channel):
        cycle = seed_tenant(repository, "acme")
        result = engine.orchestrator.run("acme", cycle.id)

        assert len(channel.sent) == 1
        assert channel.sent[0].invoice_id == result.invoice.id

    def test_tenant_orchestrator_confirms_payment(self, engine, repository, tenant_orchestrator):
        cycle = seed_tenant(repository, "acme")
        result = engine.orchestrator.run("acme", cycle.id)

        assert len(tenant_orchestrator.confirmations) == 1
        confirmation = tenant_orchestrator.confirmations[0]
        assert confirmation["tenant_id"] == "acme"
        assert confirmation["cycle_id"] == cycle.id
        assert confirmation["invoice_id"] == result.invoice.id
        assert Decimal(confirmation["amount"]) == result.payment.amount
        assert confirmation["transaction_id"] == result.payment.transaction_id

    def test_rerun_notify_stage_does_not_resend(self, engine, repository, channel, tenant_orchestrator):
        cycle = seed_tenant(repository, "acme")
        result = engine.orchestrator.run("acme", cycle.id)
        context = CycleContext(tenant_id="acme", cycle=cycle, invoice=result.invoice, payment=result.payment)

        dict(engine.orchestrator.stages)["notify"](context)

        assert len(channel.sent) == 1
        assert len(tenant_orchestrator.confirmations) == 1

    def test_orchestrator_outage_does_not_block_completion(self, engine, repository, tenant_orchestrator):
        cycle = seed_tenant(repository, "acme")
        tenant_orchestrator.fail = True

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.COMPLETED
        pending = repository.pending_notifications()
        assert [n.kind for n in pending] == ["payment_confirmed"]


class TestIdempotence:
    """Test at-most-once execution per (tenant, cycle)."""

    def test_second_run_is_skipped(self, engine, repository, gateway):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.run("acme", cycle.id)

        second = engine.orchestrator.run("acme", cycle.id)

        assert second.outcome == CycleOutcome.SKIPPED
        assert gateway.charge_count() == 1
        assert len(repository.list_payments_for_invoice(repository.get_invoice_for_cycle(cycle.id).id)) == 1
        assert len(engine.publisher.of_type(EventType.BILLING_STARTED)) == 1

    def test_concurrent_runs_charge_once(self, engine, repository, gateway):
        cycle = seed_tenant(repository, "acme")
        outcomes = []

        def run():
            outcomes.append(engine.orchestrator.run("acme", cycle.id).outcome)

        threads = [threading.Thread(target=run) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(CycleOutcome.COMPLETED) == 1
        assert outcomes.count(CycleOutcome.SKIPPED) == 3
        assert gateway.charge_count() == 1

    def test_unknown_cycle(self, engine):
        result = engine.orchestrator.run("acme", "cyc_missing")
        assert result.outcome == CycleOutcome.SKIPPED
        assert result.reason == ReasonCode.BILLING_CYCLE_NOT_FOUND

    def test_cycle_of_other_tenant_is_not_found(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        result = engine.orchestrator.run("globex", cycle.id)
        assert result.reason == ReasonCode.BILLING_CYCLE_NOT_FOUND
        assert repository.get_cycle(cycle.id).status == CycleStatus.SCHEDULED


class TestFailures:
    """Test failure handling leaves the cycle FAILED."""

    def test_signing_failure_persists_no_invoice(self, engine, repository, gateway):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.signer = MagicMock()
        engine.orchestrator.signer.sign.side_effect = RuntimeError("certificate expired")

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.FAILED
        assert result.reason == ReasonCode.INVOICE_SIGNING_FAILED
        assert repository.get_invoice_for_cycle(cycle.id) is None
        assert repository.get_cycle(cycle.id).status == CycleStatus.FAILED
        assert gateway.charge_count() == 0

    def test_payment_failure(self, engine, repository, gateway):
        cycle = seed_tenant(repository, "acme")
        gateway.decline("acme", code="card_declined", recoverable=True)

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.FAILED
        assert result.reason == ReasonCode.PAYMENT_DECLINED
        assert result.recoverable
        stored = repository.get_cycle(cycle.id)
        assert stored.status == CycleStatus.FAILED
        assert stored.last_error == ReasonCode.PAYMENT_DECLINED.value
        assert stored.retry_count == 0
        # The invoice was persisted before payment and survives the failure.
        assert repository.get_invoice_for_cycle(cycle.id) is not None
        assert len(engine.publisher.of_type(EventType.PAYMENT_FAILED)) == 1

    def test_missing_token_fails_cycle(self, engine, repository):
        cycle = seed_tenant(repository, "acme", with_token=False)
        result = engine.orchestrator.run("acme", cycle.id)
        assert result.reason == ReasonCode.MISSING_PAYMENT_TOKEN

    def test_cancelled_subscription(self, engine, repository):
        from dataclasses import replace
        cycle = seed_tenant(repository, "acme")
        repository.save_subscription(replace(repository.get_subscription("acme"), cancelled=True))

        result = engine.orchestrator.run("acme", cycle.id)
        assert result.reason == ReasonCode.SUBSCRIPTION_INACTIVE

    def test_unexpected_error_is_contained(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.usage = MagicMock()
        engine.orchestrator.usage.fetch_usage.side_effect = KeyError("boom")

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.FAILED
        assert result.reason == ReasonCode.UNEXPECTED_ERROR
        assert repository.get_cycle(cycle.id).status == CycleStatus.FAILED

    def test_usage_timeout_is_recoverable(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        engine.orchestrator.usage = MagicMock()
        engine.orchestrator.usage.fetch_usage.side_effect = TimeoutError("metrics slow")

        result = engine.orchestrator.run("acme", cycle.id)
        assert result.reason == ReasonCode.COLLABORATOR_UNAVAILABLE
        assert result.recoverable

    def test_notification_failure_does_not_block_completion(self, engine, repository, channel):
        cycle = seed_tenant(repository, "acme")
        channel.fail = True

        result = engine.orchestrator.run("acme", cycle.id)

        assert result.outcome == CycleOutcome.COMPLETED
        pending = repository.pending_notifications()
        assert len(pending) == 1
        assert pending[0].status == NotificationStatus.PENDING

    def test_event_publish_failure_does_not_block_completion(self, engine, repository):
        cycle = seed_tenant(repository, "acme")
        broken = MagicMock()
        broken.publish.side_effect = ConnectionError("bus down")
        engine.orchestrator.publisher = broken

        result = engine.orchestrator.run("acme", cycle.id)
        assert result.outcome == CycleOutcome.COMPLETED

    def test_retry_reuses_existing_invoice(self, engine, repository, gateway):
        cycle = seed_tenant(repository, "acme")
        gateway.decline("acme", recoverable=True)
        first = engine.orchestrator.run("acme", cycle.id)
        gateway.declined_tenants.clear()

        second = engine.orchestrator.run("acme", cycle.id, count_retry=True)

        assert second.outcome == CycleOutcome.COMPLETED
        assert second.invoice.id == first.invoice.id
        assert second.payment.attempts == 2
