"""
Payment orchestration: token validation, charging and reversal.

Payment initiation is idempotent on the invoice: once an invoice has a
successful payment, later calls return that payment and never reach the
gateway. A non-reusable token is consumed by the validation that accepts it
and is bound to that invoice: it never validates for a second invoice, but
retried attempts on the same invoice may reuse it.
"""

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from tenant_billing.gateways.base import GatewayDeclined, PaymentGateway
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.storage.models import (
    PaymentAttempt,
    PaymentResult,
    PaymentStatus,
    PaymentToken,
)
from tenant_billing.storage.repository import BillingRepository, new_id

from .errors import (
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
    UnknownProviderError,
)
from .events import EventPublisher, EventType, make_event, publish_safely
from .money import to_money

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_TIMEOUT = 10.0

SignatureVerifier = Callable[[PaymentToken], bool]


def payload_present(token: PaymentToken) -> bool:
    """Default signature check: the encrypted payload must not be empty."""
    return bool(token.encrypted_payload and token.encrypted_payload.strip())


class PaymentOrchestrator:
    """Validates tokens, charges invoices through a gateway and reverses charges."""

    def __init__(
        self,
        repository: BillingRepository,
        gateways: GatewayRegistry,
        publisher: EventPublisher,
        gateway_timeout: float = DEFAULT_GATEWAY_TIMEOUT,
        verify_signature: SignatureVerifier = payload_present,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.gateways = gateways
        self.publisher = publisher
        self.gateway_timeout = gateway_timeout
        self.verify_signature = verify_signature
        self.clock = clock

    def _gateway_for(self, token: PaymentToken) -> PaymentGateway:
        try:
            return self.gateways.get(token.gateway_provider)
        except UnknownProviderError:
            raise TokenRejectedByProvider(
                f"Token {token.id} references unknown provider {token.gateway_provider}",
                tenant_id=token.tenant_id,
            )

    def validate_token(
        self,
        token: PaymentToken,
        tenant_id: str,
        timeout: Optional[float] = None,
        invoice_id: Optional[str] = None
    ) -> PaymentToken:
        """Check a token in order: revoked, expired, tenant, signature, reuse, provider.

        A non-reusable token consumed earlier for the same ``invoice_id`` still
        validates, so a failed charge can be retried with it.

        Raises:
            TokenRevoked, TokenExpired, TokenTenantMismatch, TokenInvalidSignature,
            TokenReused, TokenRejectedByProvider: On the first failing check
            GatewayTimeout: If the provider check timed out
        """
        now = self.clock()
        if token.revoked:
            raise TokenRevoked(f"Token {token.id} is revoked", tenant_id=tenant_id)
        if token.expires_at <= now:
            raise TokenExpired(f"Token {token.id} expired at {token.expires_at}", tenant_id=tenant_id)
        if token.tenant_id != tenant_id:
            raise TokenTenantMismatch(
                f"Token {token.id} belongs to {token.tenant_id}, not {tenant_id}", tenant_id=tenant_id
            )
        if not self.verify_signature(token):
            raise TokenInvalidSignature(f"Token {token.id} failed signature verification", tenant_id=tenant_id)
        if not token.reusable and self.repository.is_token_consumed(token.id, invoice_id):
            raise TokenReused(f"Single-use token {token.id} was already used", tenant_id=tenant_id)

        gateway = self._gateway_for(token)
        if not gateway.validate_token(token, timeout or self.gateway_timeout):
            raise TokenRejectedByProvider(
                f"Provider {token.gateway_provider} rejected token {token.id}", tenant_id=tenant_id
            )

        if not token.reusable and not self.repository.consume_token(token.id, tenant_id, now, invoice_id):
            # Another validation consumed it between the check and here.
            raise TokenReused(f"Single-use token {token.id} was already used", tenant_id=tenant_id)
        return token

    def initiate_payment(
        self,
        token: Optional[PaymentToken],
        amount: Decimal,
        tenant_id: str,
        invoice_id: str,
        timeout: Optional[float] = None
    ) -> PaymentResult:
        """Charge ``amount`` for an invoice.

        Returns:
            The successful PaymentResult (the existing one if the invoice was
            already paid)

        Raises:
            MissingRequiredField: If the invoice does not exist or no token is given
            TokenValidationError: If the token is not usable
            PaymentFailed: If the gateway did not settle the charge
        """
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None or invoice.tenant_id != tenant_id:
            raise MissingRequiredField(f"Invoice {invoice_id} not found for tenant {tenant_id}", tenant_id=tenant_id)

        with self.repository.lock_cycle(tenant_id, invoice.cycle_id):
            existing = self.repository.find_successful_payment(invoice_id)
            if existing is not None:
                logger.info(
                    "Invoice already paid tenant=%s invoice=%s payment=%s",
                    tenant_id, invoice_id, existing.id,
                )
                return existing

            if token is None:
                raise MissingRequiredField(
                    f"No payment token for tenant {tenant_id}",
                    reason=ReasonCode.MISSING_PAYMENT_TOKEN,
                    tenant_id=tenant_id, cycle_id=invoice.cycle_id, invoice_id=invoice_id,
                )
            charge = to_money(amount)
            timeout = timeout or self.gateway_timeout
            self.validate_token(token, tenant_id, timeout, invoice_id)
            gateway = self._gateway_for(token)

            attempt_number = len(self.repository.list_payments_for_invoice(invoice_id)) + 1
            pending = PaymentResult(
                id=new_id("pay"),
                tenant_id=tenant_id,
                cycle_id=invoice.cycle_id,
                invoice_id=invoice_id,
                amount=charge,
                status=PaymentStatus.PENDING,
                attempts=attempt_number,
                attempt_log=(PaymentAttempt(at=self.clock(), outcome="initiated", detail=token.gateway_provider),),
                gateway_provider=token.gateway_provider,
                created_at=self.clock(),
            )
            self.repository.insert_payment(pending)

            try:
                transaction_id = gateway.process_payment(token, charge, tenant_id, invoice_id, timeout)
            except GatewayTimeout as e:
                self._fail(pending, "timeout", True, str(e), ReasonCode.GATEWAY_TIMEOUT)
            except GatewayDeclined as e:
                self._fail(pending, e.code, e.recoverable, str(e), ReasonCode.PAYMENT_DECLINED)
            except Exception as e:
                logger.exception("Gateway error tenant=%s invoice=%s payment=%s", tenant_id, invoice_id, pending.id)
                self._fail(pending, "gateway_error", True, str(e), ReasonCode.COLLABORATOR_UNAVAILABLE)

            result = self.repository.complete_payment(
                pending.id,
                PaymentStatus.SUCCESS,
                PaymentAttempt(at=self.clock(), outcome="success", detail=transaction_id),
                transaction_id=transaction_id,
            )

        logger.info(
            "Payment succeeded tenant=%s cycle=%s invoice=%s payment=%s transaction=%s",
            tenant_id, result.cycle_id, invoice_id, result.id, transaction_id,
        )
        publish_safely(self.publisher, make_event(
            EventType.PAYMENT_SUCCESS, tenant_id, result.cycle_id,
            {"invoice_id": invoice_id, "payment_id": result.id, "amount": str(charge), "transaction_id": transaction_id},
        ))
        return result

    def _fail(self, pending: PaymentResult, failure_reason: str, recoverable: bool, detail: str, reason: ReasonCode):
        failed = self.repository.complete_payment(
            pending.id,
            PaymentStatus.FAILED,
            PaymentAttempt(at=self.clock(), outcome="failed", detail=f"{failure_reason}: {detail}"),
            failure_reason=failure_reason,
            recoverable=recoverable,
        )
        logger.warning(
            "Payment failed tenant=%s cycle=%s invoice=%s payment=%s reason=%s recoverable=%s",
            failed.tenant_id, failed.cycle_id, failed.invoice_id, failed.id, failure_reason, recoverable,
        )
        publish_safely(self.publisher, make_event(
            EventType.PAYMENT_FAILED, failed.tenant_id, failed.cycle_id,
            {"invoice_id": failed.invoice_id, "payment_id": failed.id, "failure_reason": failure_reason},
            discriminator=f"attempt-{failed.attempts}",
        ))
        raise PaymentFailed(
            f"Payment {failed.id} failed: {failure_reason}",
            failure_reason=failure_reason,
            recoverable=recoverable,
            reason=reason,
            tenant_id=failed.tenant_id,
            cycle_id=failed.cycle_id,
            invoice_id=failed.invoice_id,
        )

    def reverse_transaction(
        self,
        transaction_id: str,
        reason: str,
        actor: str,
        timeout: Optional[float] = None
    ) -> PaymentResult:
        """Reverse a successful charge.

        Reversing an already-reversed payment returns it unchanged.

        Raises:
            PaymentNotFound: Unknown transaction id
            PaymentNotReversible: The payment is not a success
            ReversalFailed: The gateway refused or failed; nothing is recorded
        """
        payment = self.repository.find_payment_by_transaction(transaction_id)
        if payment is None:
            raise PaymentNotFound(f"No payment with transaction {transaction_id}")
        if payment.reversed:
            return payment
        if not payment.is_success:
            raise PaymentNotReversible(
                f"Payment {payment.id} is {payment.status.value}",
                tenant_id=payment.tenant_id, cycle_id=payment.cycle_id, invoice_id=payment.invoice_id,
            )

        try:
            gateway = self.gateways.get(payment.gateway_provider)
            gateway.reverse_payment(transaction_id, payment.amount, timeout or self.gateway_timeout)
        except Exception as e:
            logger.error(
                "Reversal failed tenant=%s invoice=%s payment=%s: %s",
                payment.tenant_id, payment.invoice_id, payment.id, e,
            )
            raise ReversalFailed(
                f"Reversal of {transaction_id} failed: {e}",
                tenant_id=payment.tenant_id, cycle_id=payment.cycle_id, invoice_id=payment.invoice_id,
            ) from e

        at = self.clock()
        if not self.repository.mark_payment_reversed(payment.id, reason, actor, at):
            return self.repository.get_payment(payment.id)
        logger.info(
            "Payment reversed tenant=%s invoice=%s payment=%s actor=%s reason=%s",
            payment.tenant_id, payment.invoice_id, payment.id, actor, reason,
        )
        publish_safely(self.publisher, make_event(
            EventType.PAYMENT_REVERSED, payment.tenant_id, payment.cycle_id,
            {"invoice_id": payment.invoice_id, "payment_id": payment.id, "reason": reason, "actor": actor},
            discriminator=payment.id,
        ))
        return replace(payment, reversed=True, reversal_reason=reason, reversal_actor=actor, reversed_at=at)
