"""
Configuration management and loading.

Loads the billing engine settings from YAML: billing constants, collaborator
timeouts, tax rules, plan prices, tenant policies and the notification
webhook.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

import yaml

from tenant_billing.core.errors import ReasonCode, TaxConfigurationError
from tenant_billing.core.tax import parse_rate
from tenant_billing.storage.models import Plan, TaxRule

RENEWAL_MODES = {"automatic", "manual", "mixed"}


@dataclass(frozen=True)
class BillingConfig:
    """Engine-wide billing constants."""
    max_retries: int = 3
    payment_terms_days: int = 14
    currency: str = "USD"
    signature_format: str = "XAdES-BES"
    notification_max_attempts: int = 5

    def __post_init__(self):
        """Validate billing values."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.payment_terms_days < 0:
            raise ValueError("payment_terms_days must be >= 0")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError("currency must be a 3-letter code")
        if self.notification_max_attempts < 1:
            raise ValueError("notification_max_attempts must be >= 1")


@dataclass(frozen=True)
class TimeoutConfig:
    """Seconds allowed for each outbound collaborator call."""
    gateway: float = 10.0
    orchestrator: float = 5.0
    notification: float = 5.0
    usage: float = 5.0

    def __post_init__(self):
        for name in ("gateway", "orchestrator", "notification", "usage"):
            if getattr(self, name) <= 0:
                raise ValueError(f"timeouts.{name} must be > 0")


@dataclass(frozen=True)
class WebhookConfig:
    """Outbound webhook for tenant notifications. Disabled without a url."""
    url: Optional[str] = None
    secret: Optional[str] = None
    kinds: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if self.url is not None and not self.url.startswith(("http://", "https://")):
            raise ValueError("webhook.url must be an http(s) URL")

    @property
    def enabled(self) -> bool:
        return self.url is not None


@dataclass(frozen=True)
class PolicyConfig:
    """Tenant policy values. Tenant overrides are merged over the defaults."""
    grace_days: int = 7
    warning_days: int = 3
    cancel_instead_of_suspend: bool = False
    auto_reactivate: bool = True
    allow_manual_renewal: bool = False
    pre_approved: bool = False
    renewal_period_months: int = 1
    usage_limit: Optional[int] = None
    ineligible_plans: FrozenSet[str] = frozenset()
    payment_required_modes: FrozenSet[str] = frozenset()
    fail_on_reasons: FrozenSet[str] = frozenset({
        ReasonCode.CONTRACT_INVALID.value,
        ReasonCode.PLAN_NOT_ELIGIBLE.value,
    })

    def __post_init__(self):
        if self.grace_days < 0:
            raise ValueError("grace_days must be >= 0")
        if self.warning_days < 0:
            raise ValueError("warning_days must be >= 0")
        if self.renewal_period_months < 1:
            raise ValueError("renewal_period_months must be >= 1")
        if self.usage_limit is not None and self.usage_limit < 0:
            raise ValueError("usage_limit must be >= 0")
        unknown_modes = set(self.payment_required_modes) - RENEWAL_MODES
        if unknown_modes:
            raise ValueError(f"Unknown renewal modes: {unknown_modes}")
        known_reasons = {code.value for code in ReasonCode}
        unknown_reasons = set(self.fail_on_reasons) - known_reasons
        if unknown_reasons:
            raise ValueError(f"Unknown reason codes in fail_on_reasons: {unknown_reasons}")


@dataclass(frozen=True)
class EngineConfig:
    """Complete billing engine configuration."""
    billing: BillingConfig = field(default_factory=BillingConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    tax_rules: Tuple[TaxRule, ...] = ()
    plans: Dict[str, Plan] = field(default_factory=dict)
    policy_defaults: PolicyConfig = field(default_factory=PolicyConfig)
    tenant_policies: Dict[str, PolicyConfig] = field(default_factory=dict)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    def policy_for(self, tenant_id: str) -> PolicyConfig:
        """Get the policy of a tenant, using defaults if not specified."""
        return self.tenant_policies.get(tenant_id, self.policy_defaults)


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Unknown keys are rejected everywhere so a typo never silently falls back
    to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'billing', 'timeouts', 'tax_rules', 'plans', 'policies', 'webhook'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    billing = _parse_billing(_section(raw_config, 'billing'))
    timeouts = _parse_timeouts(_section(raw_config, 'timeouts'))
    tax_rules = _parse_tax_rules(raw_config.get('tax_rules') or [])
    plans = _parse_plans(_section(raw_config, 'plans'), billing.currency)
    webhook = _parse_webhook(_section(raw_config, 'webhook'))

    policies_data = _section(raw_config, 'policies')
    unknown_policy_keys = set(policies_data.keys()) - {'defaults', 'tenants'}
    if unknown_policy_keys:
        raise ValueError(f"Unknown policies keys: {unknown_policy_keys}")
    defaults = _parse_policy(_section(policies_data, 'defaults'), PolicyConfig(), "policies.defaults")

    tenants_data = _section(policies_data, 'tenants')
    tenant_policies = {}
    for tenant_id, tenant_data in tenants_data.items():
        if not isinstance(tenant_data, dict):
            raise ValueError(f"Policy for tenant '{tenant_id}' must be a dictionary")
        tenant_policies[str(tenant_id)] = _parse_policy(tenant_data, defaults, f"policies.tenants.{tenant_id}")

    return EngineConfig(
        billing=billing,
        timeouts=timeouts,
        tax_rules=tax_rules,
        plans=plans,
        policy_defaults=defaults,
        tenant_policies=tenant_policies,
        webhook=webhook,
    )


def _section(data: Dict, name: str) -> Dict:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return value


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _bool(data: Dict, key: str, default: bool, path: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _string_set(data: Dict, key: str, default: FrozenSet[str], path: str, transform=str) -> FrozenSet[str]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ValueError(f"'{key}' in {path} must be a list")
    return frozenset(transform(item) for item in value)


def _parse_billing(data: Dict) -> BillingConfig:
    _check_keys(data, {'max_retries', 'payment_terms_days', 'currency', 'signature_format',
                       'notification_max_attempts'}, "billing")
    currency = data.get('currency', "USD")
    signature_format = data.get('signature_format', "XAdES-BES")
    if not isinstance(currency, str):
        raise ValueError("'currency' in billing must be a string")
    if not isinstance(signature_format, str) or not signature_format:
        raise ValueError("'signature_format' in billing must be a non-empty string")
    return BillingConfig(
        max_retries=_int(data, 'max_retries', 3, "billing"),
        payment_terms_days=_int(data, 'payment_terms_days', 14, "billing"),
        currency=currency.upper(),
        signature_format=signature_format,
        notification_max_attempts=_int(data, 'notification_max_attempts', 5, "billing"),
    )


def _parse_timeouts(data: Dict) -> TimeoutConfig:
    _check_keys(data, {'gateway', 'orchestrator', 'notification', 'usage'}, "timeouts")
    return TimeoutConfig(
        gateway=_number(data, 'gateway', 10.0, "timeouts"),
        orchestrator=_number(data, 'orchestrator', 5.0, "timeouts"),
        notification=_number(data, 'notification', 5.0, "timeouts"),
        usage=_number(data, 'usage', 5.0, "timeouts"),
    )


def _parse_tax_rules(data) -> Tuple[TaxRule, ...]:
    """Parse ``tax_rules`` entries of the form ``{jurisdiction, rate, name}``.

    Raises:
        ValueError: If an entry is malformed or its rate is invalid
    """
    if not isinstance(data, list):
        raise ValueError("'tax_rules' must be a list")
    rules = []
    for index, entry in enumerate(data):
        path = f"tax_rules[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")
        _check_keys(entry, {'jurisdiction', 'rate', 'name'}, path)
        if 'jurisdiction' not in entry or not isinstance(entry['jurisdiction'], str):
            raise ValueError(f"Missing required 'jurisdiction' in {path}")
        if 'rate' not in entry:
            raise ValueError(f"Missing required 'rate' in {path}")
        key = entry['jurisdiction'].strip().upper()
        try:
            rate = parse_rate(key, entry['rate'])
        except TaxConfigurationError as e:
            raise ValueError(f"{path}: {e}")
        rules.append(TaxRule(jurisdiction_key=key, rate=rate, name=str(entry.get('name', "tax"))))
    return tuple(rules)


def _parse_plans(data: Dict, currency: str) -> Dict[str, Plan]:
    plans = {}
    for code, plan_data in data.items():
        path = f"plans.{code}"
        if not isinstance(plan_data, dict):
            raise ValueError(f"{path} must be a dictionary")
        _check_keys(plan_data, {'plan_type', 'amount', 'currency'}, path)
        if 'plan_type' not in plan_data or not isinstance(plan_data['plan_type'], str):
            raise ValueError(f"Missing required 'plan_type' in {path}")
        if 'amount' not in plan_data:
            raise ValueError(f"Missing required 'amount' in {path}")
        raw_amount = plan_data['amount']
        if isinstance(raw_amount, bool):
            raise ValueError(f"'amount' in {path} must be a number")
        try:
            amount = Decimal(str(raw_amount))
        except InvalidOperation:
            raise ValueError(f"'amount' in {path} must be a number")
        if not amount.is_finite() or amount < 0:
            raise ValueError(f"'amount' in {path} must be >= 0")
        plans[str(code)] = Plan(
            code=str(code),
            plan_type=plan_data['plan_type'].strip().upper(),
            amount=amount,
            currency=str(plan_data.get('currency', currency)).upper(),
        )
    return plans


def _parse_policy(data: Dict, base: PolicyConfig, path: str) -> PolicyConfig:
    """Parse a policy block, taking unset values from ``base``."""
    _check_keys(data, {
        'grace_days', 'warning_days', 'cancel_instead_of_suspend', 'auto_reactivate',
        'allow_manual_renewal', 'pre_approved', 'renewal_period_months', 'usage_limit',
        'ineligible_plans', 'payment_required_modes', 'fail_on_reasons',
    }, path)
    usage_limit = data.get('usage_limit', base.usage_limit)
    if usage_limit is not None and (isinstance(usage_limit, bool) or not isinstance(usage_limit, int)):
        raise ValueError(f"'usage_limit' in {path} must be an integer")
    return replace(
        base,
        grace_days=_int(data, 'grace_days', base.grace_days, path),
        warning_days=_int(data, 'warning_days', base.warning_days, path),
        cancel_instead_of_suspend=_bool(data, 'cancel_instead_of_suspend', base.cancel_instead_of_suspend, path),
        auto_reactivate=_bool(data, 'auto_reactivate', base.auto_reactivate, path),
        allow_manual_renewal=_bool(data, 'allow_manual_renewal', base.allow_manual_renewal, path),
        pre_approved=_bool(data, 'pre_approved', base.pre_approved, path),
        renewal_period_months=_int(data, 'renewal_period_months', base.renewal_period_months, path),
        usage_limit=usage_limit,
        ineligible_plans=_string_set(data, 'ineligible_plans', base.ineligible_plans, path),
        payment_required_modes=_string_set(
            data, 'payment_required_modes', base.payment_required_modes, path, lambda m: str(m).lower()
        ),
        fail_on_reasons=_string_set(
            data, 'fail_on_reasons', base.fail_on_reasons, path, lambda r: str(r).upper()
        ),
    )


def _parse_webhook(data: Dict) -> WebhookConfig:
    _check_keys(data, {'url', 'secret', 'kinds'}, "webhook")
    for key in ('url', 'secret'):
        if data.get(key) is not None and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in webhook must be a string")
    return WebhookConfig(
        url=data.get('url'),
        secret=data.get('secret'),
        kinds=_string_set(data, 'kinds', frozenset(), "webhook"),
    )
