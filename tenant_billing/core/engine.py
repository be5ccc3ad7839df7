"""
Wiring of the billing components around one repository and configuration.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from tenant_billing.config.loader import EngineConfig
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.gateways.sandbox import SandboxGateway
from tenant_billing.storage.repository import BillingRepository

from .enforcement import NonPaymentEnforcer, RecordingOrchestratorClient, TenantOrchestratorClient
from .events import EventPublisher, InMemoryEventPublisher
from .invoice import InvoiceSigner, SandboxInvoiceSigner
from .notifications import (
    InMemoryChannel,
    NotificationChannel,
    NotificationDispatcher,
    TenantOrchestratorChannel,
    WebhookChannel,
)
from .orchestrator import PAYMENT_CONFIRMED, BillingCycleOrchestrator, ConfiguredPricing, FullCycleUsage, UsageSource
from .payment import PaymentOrchestrator
from .policy import ConfiguredPolicyService
from .renewal import RenewalEvaluator
from .retry import RetryEngine
from .scheduler import CycleScheduler
from .tax import StaticTaxRuleSource


@dataclass
class BillingEngine:
    config: EngineConfig
    repository: BillingRepository
    publisher: EventPublisher
    gateways: GatewayRegistry
    tax_source: StaticTaxRuleSource
    payments: PaymentOrchestrator
    notifier: NotificationDispatcher
    orchestrator: BillingCycleOrchestrator
    renewal: RenewalEvaluator
    enforcement: NonPaymentEnforcer
    retry: RetryEngine
    scheduler: CycleScheduler


def build_engine(
    repository: BillingRepository,
    config: Optional[EngineConfig] = None,
    publisher: Optional[EventPublisher] = None,
    gateways: Optional[GatewayRegistry] = None,
    signer: Optional[InvoiceSigner] = None,
    channel: Optional[NotificationChannel] = None,
    usage: Optional[UsageSource] = None,
    tenant_orchestrator: Optional[TenantOrchestratorClient] = None
) -> BillingEngine:
    """Assemble an engine. Unset collaborators get the in-process implementations.

    Payment confirmations are routed to the tenant orchestrator. A configured
    webhook receives the kinds it lists, or every other kind when it lists none
    and no ``channel`` is given.
    """
    config = config or EngineConfig()
    publisher = publisher or InMemoryEventPublisher()
    if gateways is None:
        gateways = GatewayRegistry()
        gateways.register("sandbox", SandboxGateway())
    tax_source = StaticTaxRuleSource(config.tax_rules)
    policies = ConfiguredPolicyService(config)

    tenant_orchestrator = tenant_orchestrator or RecordingOrchestratorClient()

    payments = PaymentOrchestrator(repository, gateways, publisher, gateway_timeout=config.timeouts.gateway)
    routes: Dict[str, NotificationChannel] = {}
    if config.webhook.enabled:
        webhook = WebhookChannel(config.webhook.url, config.webhook.secret)
        if config.webhook.kinds:
            routes.update((kind, webhook) for kind in config.webhook.kinds)
        elif channel is None:
            channel = webhook
    routes[PAYMENT_CONFIRMED] = TenantOrchestratorChannel(tenant_orchestrator)
    notifier = NotificationDispatcher(
        repository,
        channel or InMemoryChannel(),
        timeout=config.timeouts.notification,
        max_attempts=config.billing.notification_max_attempts,
        routes=routes,
    )
    orchestrator = BillingCycleOrchestrator(
        repository=repository,
        tax_source=tax_source,
        pricing=ConfiguredPricing(config.plans),
        usage=usage or FullCycleUsage(),
        payments=payments,
        signer=signer or SandboxInvoiceSigner(config.billing.signature_format),
        notifier=notifier,
        publisher=publisher,
        billing=config.billing,
        timeouts=config.timeouts,
    )
    renewal = RenewalEvaluator(repository, policies, publisher)
    enforcement = NonPaymentEnforcer(
        repository,
        policies,
        tenant_orchestrator,
        publisher,
        timeout=config.timeouts.orchestrator,
    )
    return BillingEngine(
        config=config,
        repository=repository,
        publisher=publisher,
        gateways=gateways,
        tax_source=tax_source,
        payments=payments,
        notifier=notifier,
        orchestrator=orchestrator,
        renewal=renewal,
        enforcement=enforcement,
        retry=RetryEngine(repository, orchestrator, publisher, config.billing.max_retries, renewal=renewal),
        scheduler=CycleScheduler(repository, orchestrator, renewal),
    )
