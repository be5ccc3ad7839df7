"""
Error taxonomy for the billing engine.

Validation errors are rejected immediately and never retried. Transient errors
are retry-eligible. Fiscal errors are fatal to the invoice they concern.
Business-rule outcomes (ineligible plan, disallowed manual renewal, ...) are
NOT exceptions; they are returned as outcome values with a reason code.
"""

from enum import Enum
from typing import Optional


class ReasonCode(Enum):
    """Structured failure reason codes emitted for observability."""
    # Validation
    INVALID_CYCLE_WINDOW = "INVALID_CYCLE_WINDOW"
    INVALID_USAGE_WINDOW = "INVALID_USAGE_WINDOW"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    MISSING_PAYMENT_TOKEN = "MISSING_PAYMENT_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_TENANT_MISMATCH = "TOKEN_TENANT_MISMATCH"
    TOKEN_INVALID_SIGNATURE = "TOKEN_INVALID_SIGNATURE"
    TOKEN_REJECTED_BY_PROVIDER = "TOKEN_REJECTED_BY_PROVIDER"
    TOKEN_REUSED = "TOKEN_REUSED"
    # Transient infrastructure
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    COLLABORATOR_UNAVAILABLE = "COLLABORATOR_UNAVAILABLE"
    # Fiscal / legal
    INVOICE_SIGNING_FAILED = "INVOICE_SIGNING_FAILED"
    TAX_MISCONFIGURED = "TAX_MISCONFIGURED"
    # Payment
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PAYMENT_NOT_REVERSIBLE = "PAYMENT_NOT_REVERSIBLE"
    REVERSAL_FAILED = "REVERSAL_FAILED"
    UNKNOWN_PROVIDER = "UNKNOWN_PROVIDER"
    # Lifecycle
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    BILLING_CYCLE_NOT_FOUND = "BILLING_CYCLE_NOT_FOUND"
    CONTRACT_INVALID = "CONTRACT_INVALID"
    PLAN_NOT_ELIGIBLE = "PLAN_NOT_ELIGIBLE"
    USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
    MISSING_SUCCESSFUL_PAYMENT = "MISSING_SUCCESSFUL_PAYMENT"
    MANUAL_RENEWAL_NOT_ALLOWED = "MANUAL_RENEWAL_NOT_ALLOWED"
    MIXED_AWAITING_PAYMENT_OR_APPROVAL = "MIXED_AWAITING_PAYMENT_OR_APPROVAL"
    NON_PAYMENT_GRACE_EXPIRED = "NON_PAYMENT_GRACE_EXPIRED"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class BillingError(Exception):
    """Base class for every error raised by the billing engine.

    Carries a reason code, a recoverable flag and optional correlation
    identifiers so callers can log and route failures uniformly.
    """
    reason = ReasonCode.UNEXPECTED_ERROR
    recoverable = False

    def __init__(
        self,
        message: str,
        reason: Optional[ReasonCode] = None,
        recoverable: Optional[bool] = None,
        tenant_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ):
        super().__init__(message)
        if reason is not None:
            self.reason = reason
        if recoverable is not None:
            self.recoverable = recoverable
        self.tenant_id = tenant_id
        self.cycle_id = cycle_id
        self.invoice_id = invoice_id


# Validation

class ValidationError(BillingError):
    """Invalid input. Never retried."""
    reason = ReasonCode.MISSING_REQUIRED_FIELD


class InvalidCycleWindow(ValidationError):
    reason = ReasonCode.INVALID_CYCLE_WINDOW


class InvalidUsageWindow(ValidationError):
    reason = ReasonCode.INVALID_USAGE_WINDOW


class MissingRequiredField(ValidationError):
    reason = ReasonCode.MISSING_REQUIRED_FIELD


class TokenValidationError(ValidationError):
    """Base for payment token validation failures."""


class TokenExpired(TokenValidationError):
    reason = ReasonCode.TOKEN_EXPIRED


class TokenRevoked(TokenValidationError):
    reason = ReasonCode.TOKEN_REVOKED


class TokenTenantMismatch(TokenValidationError):
    reason = ReasonCode.TOKEN_TENANT_MISMATCH


class TokenInvalidSignature(TokenValidationError):
    reason = ReasonCode.TOKEN_INVALID_SIGNATURE


class TokenRejectedByProvider(TokenValidationError):
    reason = ReasonCode.TOKEN_REJECTED_BY_PROVIDER


class TokenReused(TokenValidationError):
    reason = ReasonCode.TOKEN_REUSED


# Transient infrastructure

class TransientError(BillingError):
    """Timeouts and connection failures. Retry-eligible."""
    reason = ReasonCode.COLLABORATOR_UNAVAILABLE
    recoverable = True


class GatewayTimeout(TransientError):
    reason = ReasonCode.GATEWAY_TIMEOUT


class CollaboratorUnavailable(TransientError):
    reason = ReasonCode.COLLABORATOR_UNAVAILABLE


# Fiscal / legal

class FiscalError(BillingError):
    """Fatal to the invoice; never silently degraded."""


class InvoiceSigningError(FiscalError):
    reason = ReasonCode.INVOICE_SIGNING_FAILED


class TaxConfigurationError(FiscalError):
    reason = ReasonCode.TAX_MISCONFIGURED


# Payment

class PaymentError(BillingError):
    """Base for payment handling errors."""
    reason = ReasonCode.PAYMENT_DECLINED


class PaymentFailed(PaymentError):
    """Raised when the gateway did not settle a charge.

    ``recoverable`` tells the retry engine whether another attempt can succeed
    (timeouts, soft declines) or not (hard declines).
    """

    def __init__(self, message: str, failure_reason: str, recoverable: bool, **kwargs):
        super().__init__(message, recoverable=recoverable, **kwargs)
        self.failure_reason = failure_reason


class PaymentNotFound(PaymentError):
    reason = ReasonCode.PAYMENT_NOT_FOUND


class PaymentNotReversible(PaymentError):
    reason = ReasonCode.PAYMENT_NOT_REVERSIBLE


class ReversalFailed(PaymentError):
    reason = ReasonCode.REVERSAL_FAILED
    recoverable = True


class UnknownProviderError(BillingError):
    reason = ReasonCode.UNKNOWN_PROVIDER
