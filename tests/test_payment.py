"""
Unit tests for payment orchestration.

Tests token validation order, replay protection, invoice-level idempotency
and reversal.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from tenant_billing.core.errors import (
    GatewayTimeout,
    MissingRequiredField,
    PaymentFailed,
    PaymentNotFound,
    PaymentNotReversible,
    ReasonCode,
    ReversalFailed,
    TokenExpired,
    TokenInvalidSignature,
    TokenRejectedByProvider,
    TokenReused,
    TokenRevoked,
    TokenTenantMismatch,
)
from tenant_billing.core.events import EventType
from tenant_billing.core.invoice import InvoiceAmounts, SandboxInvoiceSigner, assemble_invoice
from tenant_billing.storage.db import get_connection
from tenant_billing.storage.models import PaymentStatus

from conftest import make_token, seed_tenant


@pytest.fixture
def invoice(repository):
    cycle = seed_tenant(repository, "acme", with_token=False)
    return assemble_invoice(
        repository, SandboxInvoiceSigner(), "acme", cycle.id,
        InvoiceAmounts(base=Decimal("1000.00"), prorated=Decimal("0.00"), tax=Decimal("190.00")),
        cycle.period_end,
    )


class TestValidateToken:
    """Test token checks."""

    def test_valid_token(self, engine):
        token = make_token("acme")
        assert engine.payments.validate_token(token, "acme") == token

    def test_revoked(self, engine):
        with pytest.raises(TokenRevoked):
            engine.payments.validate_token(make_token("acme", revoked=True), "acme")

    def test_expired(self, engine):
        with pytest.raises(TokenExpired):
            engine.payments.validate_token(make_token("acme", expires_at=datetime.now() - timedelta(seconds=1)), "acme")

    def test_revoked_checked_before_expiry(self, engine):
        token = make_token("acme", revoked=True, expires_at=datetime.now() - timedelta(days=1))
        with pytest.raises(TokenRevoked):
            engine.payments.validate_token(token, "acme")

    def test_tenant_mismatch(self, engine):
        with pytest.raises(TokenTenantMismatch):
            engine.payments.validate_token(make_token("globex"), "acme")

    def test_empty_payload_fails_signature(self, engine):
        with pytest.raises(TokenInvalidSignature):
            engine.payments.validate_token(make_token("acme", encrypted_payload="  "), "acme")

    def test_provider_rejection(self, engine, gateway):
        token = make_token("acme")
        gateway.rejected_tokens.add(token.id)
        with pytest.raises(TokenRejectedByProvider):
            engine.payments.validate_token(token, "acme")

    def test_unknown_provider_is_rejection(self, engine):
        with pytest.raises(TokenRejectedByProvider):
            engine.payments.validate_token(make_token("acme", gateway_provider="nowhere"), "acme")

    def test_single_use_token_validates_once(self, engine):
        token = make_token("acme", reusable=False)
        engine.payments.validate_token(token, "acme")
        with pytest.raises(TokenReused):
            engine.payments.validate_token(token, "acme")

    def test_reusable_token_validates_repeatedly(self, engine):
        token = make_token("acme")
        engine.payments.validate_token(token, "acme")
        engine.payments.validate_token(token, "acme")


class TestInitiatePayment:
    """Test charging an invoice."""

    def test_success_persists_transaction(self, engine, invoice, repository, gateway):
        result = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)

        assert result.status == PaymentStatus.SUCCESS
        assert result.transaction_id
        assert result.attempts == 1
        assert [a.outcome for a in result.attempt_log] == ["initiated", "success"]
        assert repository.find_successful_payment(invoice.id) == result
        assert gateway.charge_count(invoice.id) == 1
        assert len(engine.publisher.of_type(EventType.PAYMENT_SUCCESS)) == 1

    def test_second_call_returns_existing_success(self, engine, invoice, gateway):
        """Already paid: same result, no gateway call, token not even checked."""
        first = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        expired = make_token("acme", expires_at=datetime.now() - timedelta(days=1))

        second = engine.payments.initiate_payment(expired, invoice.total_amount, "acme", invoice.id)

        assert second == first
        assert gateway.charge_count(invoice.id) == 1

    def test_consumed_token_never_reaches_gateway(self, engine, invoice, repository, gateway):
        token = make_token("acme", reusable=False)
        repository.consume_token(token.id, "acme", datetime.now())

        with pytest.raises(TokenReused):
            engine.payments.initiate_payment(token, invoice.total_amount, "acme", invoice.id)
        assert gateway.charge_count() == 0
        assert repository.list_payments_for_invoice(invoice.id) == []

    def test_decline_marks_failed(self, engine, invoice, repository, gateway):
        gateway.decline("acme", code="insufficient_funds", recoverable=False)

        with pytest.raises(PaymentFailed) as exc_info:
            engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)

        assert exc_info.value.failure_reason == "insufficient_funds"
        assert exc_info.value.recoverable is False
        payments = repository.list_payments_for_invoice(invoice.id)
        assert [p.status for p in payments] == [PaymentStatus.FAILED]
        assert payments[0].failure_reason == "insufficient_funds"
        assert len(engine.publisher.of_type(EventType.PAYMENT_FAILED)) == 1

    def test_timeout_during_token_check(self, engine, invoice, repository, gateway):
        """The provider check times out before any payment record exists."""
        gateway.latency = 60.0

        with pytest.raises(GatewayTimeout) as exc_info:
            engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id, timeout=1.0)
        assert exc_info.value.recoverable is True
        assert repository.list_payments_for_invoice(invoice.id) == []

    def test_timeout_during_charge(self, engine, invoice, repository, gateway):
        def slow_charge(*args, **kwargs):
            raise GatewayTimeout("charge timed out")

        gateway.process_payment = slow_charge
        with pytest.raises(PaymentFailed) as exc_info:
            engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        assert exc_info.value.recoverable is True
        assert exc_info.value.reason == ReasonCode.GATEWAY_TIMEOUT
        assert repository.list_payments_for_invoice(invoice.id)[0].failure_reason == "timeout"

    def test_attempts_increase_across_retries(self, engine, invoice, repository, gateway):
        gateway.decline("acme", recoverable=True)
        with pytest.raises(PaymentFailed):
            engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        gateway.declined_tenants.clear()

        result = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        assert result.attempts == 2

    def test_single_use_token_survives_recoverable_decline(self, engine, invoice, gateway):
        """A retried charge of the same invoice may reuse the token its first attempt consumed."""
        token = make_token("acme", reusable=False)
        gateway.decline("acme", code="issuer_unavailable", recoverable=True)
        with pytest.raises(PaymentFailed):
            engine.payments.initiate_payment(token, invoice.total_amount, "acme", invoice.id)
        gateway.declined_tenants.clear()

        result = engine.payments.initiate_payment(token, invoice.total_amount, "acme", invoice.id)

        assert result.status == PaymentStatus.SUCCESS
        assert result.attempts == 2

    def test_single_use_token_rejected_for_another_invoice(self, engine, invoice, gateway):
        token = make_token("acme", reusable=False)
        engine.payments.initiate_payment(token, invoice.total_amount, "acme", invoice.id)

        with pytest.raises(TokenReused):
            engine.payments.validate_token(token, "acme", invoice_id="inv_next_month")
        assert gateway.charge_count() == 1

    def test_missing_token(self, engine, invoice):
        with pytest.raises(MissingRequiredField) as exc_info:
            engine.payments.initiate_payment(None, invoice.total_amount, "acme", invoice.id)
        assert exc_info.value.reason == ReasonCode.MISSING_PAYMENT_TOKEN

    def test_float_amount_rejected(self, engine, invoice):
        with pytest.raises(TypeError):
            engine.payments.initiate_payment(make_token("acme"), 1190.0, "acme", invoice.id)


class TestReverseTransaction:
    """Test reversal of successful charges."""

    def test_reverse_success(self, engine, invoice, repository, gateway):
        paid = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)

        reversed_payment = engine.payments.reverse_transaction(paid.transaction_id, "duplicate", "ops@example.com")

        assert reversed_payment.reversed
        stored = repository.get_payment(paid.id)
        assert stored.reversed and stored.reversal_actor == "ops@example.com"
        assert gateway.reversals == [paid.transaction_id]
        assert len(engine.publisher.of_type(EventType.PAYMENT_REVERSED)) == 1

    def test_reverse_twice_is_noop(self, engine, invoice, gateway):
        paid = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        engine.payments.reverse_transaction(paid.transaction_id, "duplicate", "ops")

        again = engine.payments.reverse_transaction(paid.transaction_id, "duplicate", "ops")

        assert again.reversed
        assert gateway.reversals == [paid.transaction_id]

    def test_unknown_transaction(self, engine):
        with pytest.raises(PaymentNotFound):
            engine.payments.reverse_transaction("txn_missing", "x", "ops")

    def test_failed_payment_not_reversible(self, engine, invoice, repository):
        paid = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        conn = get_connection(repository.db_path)
        try:
            conn.execute("UPDATE payment_result SET status = 'FAILED' WHERE id = ?", (paid.id,))
        finally:
            conn.close()

        with pytest.raises(PaymentNotReversible):
            engine.payments.reverse_transaction(paid.transaction_id, "x", "ops")

    def test_gateway_failure_leaves_payment_unreversed(self, engine, invoice, repository, gateway):
        paid = engine.payments.initiate_payment(make_token("acme"), invoice.total_amount, "acme", invoice.id)
        gateway.fail_reversals = True

        with pytest.raises(ReversalFailed):
            engine.payments.reverse_transaction(paid.transaction_id, "duplicate", "ops")
        assert not repository.get_payment(paid.id).reversed
