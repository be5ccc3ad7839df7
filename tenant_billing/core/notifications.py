"""
Tenant notifications with a durable outbox.

Dispatch writes the outbox row first and then tries the channel once. A
failed send leaves the row PENDING for ``flush_pending``; after
``max_attempts`` sends it becomes DEAD. Nothing here raises into the billing
pipeline.

Each kind can be routed to its own channel. A notification dispatched with a
``dedupe_key`` is written at most once, so repeating a stage never sends it
twice.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import httpx

from tenant_billing.storage.models import NotificationRecord, NotificationStatus
from tenant_billing.storage.repository import BillingRepository, new_id

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_TIMEOUT = 5.0


class NotificationChannel(Protocol):
    def send(self, record: NotificationRecord, timeout: float) -> None:
        ...


class PaymentConfirmationClient(Protocol):
    def notify_payment_success(self, payload: Dict[str, str], timeout: float) -> None:
        ...


class InMemoryChannel:
    """Channel that collects records, optionally failing every send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[NotificationRecord] = []

    def send(self, record: NotificationRecord, timeout: float) -> None:
        if self.fail:
            raise ConnectionError("notification channel unavailable")
        self.sent.append(record)


class TenantOrchestratorChannel:
    """Delivers payment confirmations to the tenant orchestrator."""

    def __init__(self, client: PaymentConfirmationClient):
        self.client = client

    def send(self, record: NotificationRecord, timeout: float) -> None:
        self.client.notify_payment_success(json.loads(record.payload), timeout)


def build_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest of a webhook body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookChannel:
    """POSTs each notification as signed JSON to a fixed URL.

    The body carries the record id, kind, tenant, cycle, invoice and the
    decoded payload. ``X-Billing-Signature`` holds the HMAC of the exact body
    bytes when a secret is configured. Non-2xx responses raise so the outbox
    keeps the row for redelivery.
    """

    def __init__(self, url: str, secret: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.url = url
        self.secret = secret
        self.client = client

    def send(self, record: NotificationRecord, timeout: float) -> None:
        body = json.dumps({
            "id": record.id,
            "kind": record.kind,
            "tenant_id": record.tenant_id,
            "cycle_id": record.cycle_id,
            "invoice_id": record.invoice_id,
            "payload": json.loads(record.payload),
        }, separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Billing-Event": record.kind,
        }
        if self.secret:
            headers["X-Billing-Signature"] = build_signature(self.secret, body)

        if self.client is not None:
            response = self.client.post(self.url, content=body, headers=headers, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.url, content=body, headers=headers)
        response.raise_for_status()
        logger.debug("Webhook delivered id=%s kind=%s status=%d", record.id, record.kind, response.status_code)


class NotificationDispatcher:

    def __init__(
        self,
        repository: BillingRepository,
        channel: NotificationChannel,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        routes: Optional[Dict[str, NotificationChannel]] = None
    ):
        self.repository = repository
        self.channel = channel
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.routes = dict(routes or {})

    def channel_for(self, kind: str) -> NotificationChannel:
        return self.routes.get(kind, self.channel)

    def dispatch(
        self,
        kind: str,
        tenant_id: str,
        cycle_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        payload: Optional[Dict[str, str]] = None,
        dedupe_key: Optional[str] = None
    ) -> Optional[NotificationRecord]:
        """Queue a notification and try to deliver it now.

        A ``dedupe_key`` that is already in the outbox returns the existing
        record without sending again; a pending one is left to ``flush_pending``.

        Returns:
            The outbox record, or None if it could not be written
        """
        record = NotificationRecord(
            id=new_id("ntf"),
            tenant_id=tenant_id,
            kind=kind,
            payload=json.dumps(payload or {}, sort_keys=True),
            cycle_id=cycle_id,
            invoice_id=invoice_id,
            dedupe_key=dedupe_key,
            created_at=datetime.now(),
        )
        try:
            inserted = self.repository.insert_notification(record)
            if not inserted:
                existing = self.repository.get_notification_by_key(dedupe_key)
                logger.info(
                    "Notification already queued kind=%s tenant=%s cycle=%s key=%s",
                    kind, tenant_id, cycle_id, dedupe_key,
                )
                return existing
        except Exception:
            logger.exception("Could not queue notification kind=%s tenant=%s cycle=%s", kind, tenant_id, cycle_id)
            return None
        self._attempt(record)
        return record

    def _attempt(self, record: NotificationRecord) -> bool:
        try:
            self.channel_for(record.kind).send(record, self.timeout)
        except Exception as e:
            attempts = record.attempts + 1
            status = NotificationStatus.DEAD if attempts >= self.max_attempts else NotificationStatus.PENDING
            logger.warning(
                "Notification send failed id=%s kind=%s tenant=%s cycle=%s attempt=%d: %s",
                record.id, record.kind, record.tenant_id, record.cycle_id, attempts, e,
            )
            self._record(record.id, status, str(e))
            return False
        self._record(record.id, NotificationStatus.SENT, None)
        return True

    def _record(self, notification_id: str, status: NotificationStatus, error: Optional[str]) -> None:
        try:
            self.repository.record_notification_attempt(notification_id, status, error)
        except Exception:
            logger.exception("Could not update notification %s", notification_id)

    def flush_pending(self, limit: int = 100) -> Dict[str, int]:
        """Retry pending notifications. Returns counts of sent/pending/dead."""
        counts = {"sent": 0, "pending": 0, "dead": 0}
        for record in self.repository.pending_notifications(limit):
            if self._attempt(record):
                counts["sent"] += 1
            elif record.attempts + 1 >= self.max_attempts:
                counts["dead"] += 1
            else:
                counts["pending"] += 1
        return counts
