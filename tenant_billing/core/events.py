"""
Domain events.

Every event carries a unique ``event_id`` and a deterministic ``dedupe_key``
built from its type and correlation ids, so a retried step re-emits the
same logical event and consumers can drop the duplicate.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class EventType(Enum):
    BILLING_STARTED = "billing_started"
    INVOICE_GENERATED = "invoice_generated"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PLAN_RENEWED = "plan_renewed"
    RENEWAL_FAILED = "renewal_failed"
    CANCELLATION_WARNING = "cancellation_warning"
    SERVICE_SUSPENDED = "service_suspended"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_REVERSED = "payment_reversed"
    SERVICE_REACTIVATED = "service_reactivated"
    BILLING_RETRIES_EXHAUSTED = "billing_retries_exhausted"


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    tenant_id: str
    dedupe_key: str
    cycle_id: Optional[str] = None
    payload: Dict[str, str] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=datetime.now)


def make_event(
    event_type: EventType,
    tenant_id: str,
    cycle_id: Optional[str] = None,
    payload: Optional[Dict[str, str]] = None,
    discriminator: Optional[str] = None
) -> DomainEvent:
    """Build an event whose dedupe key is ``<type>:<tenant>:<cycle>[:<discriminator>]``."""
    parts = [event_type.value, tenant_id, cycle_id or "-"]
    if discriminator:
        parts.append(discriminator)
    return DomainEvent(
        type=event_type,
        tenant_id=tenant_id,
        cycle_id=cycle_id,
        payload=dict(payload or {}),
        dedupe_key=":".join(parts),
    )


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None:
        ...


class InMemoryEventPublisher:
    """Publisher that keeps events in memory, dropping repeated dedupe keys."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[DomainEvent] = []
        self._seen: Dict[str, str] = {}

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            if event.dedupe_key in self._seen:
                logger.debug("Dropping duplicate event %s", event.dedupe_key)
                return
            self._seen[event.dedupe_key] = event.event_id
            self._events.append(event)

    @property
    def events(self) -> List[DomainEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: EventType) -> List[DomainEvent]:
        return [e for e in self.events if e.type == event_type]


def publish_safely(publisher: EventPublisher, event: DomainEvent) -> bool:
    """Publish on the side channel. Failures are logged, never raised."""
    try:
        publisher.publish(event)
        return True
    except Exception:
        logger.exception(
            "Event publish failed type=%s tenant=%s cycle=%s",
            event.type.value, event.tenant_id, event.cycle_id,
        )
        return False
