"""
Invoice assembly and signing.

``assemble_invoice`` only adds up amounts it is given. Callers run
prorate -> tax -> assemble exactly once per cycle; nothing here re-derives
proration or tax.
"""

import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, Protocol

from tenant_billing.storage.models import Invoice, InvoiceStatus
from tenant_billing.storage.repository import BillingRepository, new_id

from .errors import InvoiceSigningError, MissingRequiredField
from .money import round_money, to_money

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_FORMAT = "XAdES-BES"


@dataclass(frozen=True)
class Signature:
    format: str
    timestamp: datetime
    value: str


class InvoiceSigner(Protocol):
    def sign(self, invoice: Invoice) -> Signature:
        ...


class SandboxInvoiceSigner:
    """Deterministic digest signer for tests and demos. Not a fiscal signature."""

    def __init__(self, signature_format: str = DEFAULT_SIGNATURE_FORMAT):
        self.signature_format = signature_format

    def sign(self, invoice: Invoice) -> Signature:
        digest = hashlib.sha256(
            f"{invoice.id}|{invoice.tenant_id}|{invoice.cycle_id}|{invoice.total_amount}".encode("utf-8")
        ).hexdigest()
        return Signature(format=self.signature_format, timestamp=datetime.now(), value=digest)


@dataclass(frozen=True)
class InvoiceAmounts:
    """Calculated amounts for one cycle, ready for assembly."""
    base: Decimal
    prorated: Decimal
    tax: Decimal
    usage_units: int = 0
    currency: str = "USD"


def due_date(cycle_end: date, payment_terms_days: int) -> datetime:
    """Invoices fall due at the start of the day ``payment_terms_days`` after cycle end."""
    return datetime.combine(cycle_end + timedelta(days=payment_terms_days), time.min)


def draft_invoice(
    tenant_id: str,
    cycle_id: str,
    amounts: InvoiceAmounts,
    cycle_end: date,
    payment_terms_days: int = 0,
    issued_at: Optional[datetime] = None
) -> Invoice:
    """Build an unsigned invoice with ``total = base + prorated + tax``."""
    if not tenant_id or not cycle_id:
        raise MissingRequiredField("Invoice requires tenant_id and cycle_id")
    base = round_money(amounts.base)
    prorated = round_money(amounts.prorated)
    tax = round_money(amounts.tax)
    return Invoice(
        id=new_id("inv"),
        tenant_id=tenant_id,
        cycle_id=cycle_id,
        base_amount=base,
        prorated_amount=prorated,
        tax_amount=tax,
        total_amount=round_money(to_money(base) + prorated + tax),
        issued_at=issued_at or datetime.now(),
        due_at=due_date(cycle_end, payment_terms_days),
        status=InvoiceStatus.GENERATED,
        currency=amounts.currency,
        usage_units=amounts.usage_units,
    )


def assemble_invoice(
    repository: BillingRepository,
    signer: InvoiceSigner,
    tenant_id: str,
    cycle_id: str,
    amounts: InvoiceAmounts,
    cycle_end: date,
    payment_terms_days: int = 0
) -> Invoice:
    """Draft, sign and persist an invoice.

    The signature fields and the SIGNED status are written by the same insert
    that creates the row, so an invoice is never stored unsigned.

    Raises:
        InvoiceSigningError: If the signer fails or returns an empty signature.
            Nothing is persisted.
    """
    draft = draft_invoice(tenant_id, cycle_id, amounts, cycle_end, payment_terms_days)
    try:
        signature = signer.sign(draft)
    except Exception as e:
        logger.error("Invoice signing failed tenant=%s cycle=%s invoice=%s: %s", tenant_id, cycle_id, draft.id, e)
        raise InvoiceSigningError(
            f"Signing failed for invoice {draft.id}: {e}",
            tenant_id=tenant_id, cycle_id=cycle_id, invoice_id=draft.id,
        ) from e
    if signature is None or not signature.value:
        raise InvoiceSigningError(
            f"Signer returned no signature for invoice {draft.id}",
            tenant_id=tenant_id, cycle_id=cycle_id, invoice_id=draft.id,
        )

    signed = replace(
        draft,
        status=InvoiceStatus.SIGNED,
        signed=True,
        signature_format=signature.format,
        signature_timestamp=signature.timestamp,
        signature_value=signature.value,
    )
    repository.save_invoice(signed)
    logger.info(
        "Invoice generated tenant=%s cycle=%s invoice=%s total=%s",
        tenant_id, cycle_id, signed.id, signed.total_amount,
    )
    return signed
