"""
Tax evaluation.

Rates are looked up by jurisdiction key ``"<country>-<planType>"``. A key with
no rules is taxed at zero, which is logged as a warning since it usually means
a missing rule rather than a tax-exempt jurisdiction.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Protocol, Tuple

from tenant_billing.storage.models import TaxRule

from .errors import TaxConfigurationError, UnknownProviderError
from .money import ZERO, MoneyInput, round_money, to_money

logger = logging.getLogger(__name__)


def jurisdiction_key(country_code: str, plan_type: str) -> str:
    return f"{country_code.strip().upper()}-{plan_type.strip().upper()}"


class TaxRuleSource(Protocol):
    def rules_for(self, key: str) -> List[TaxRule]:
        ...


def validate_rule(rule: TaxRule) -> TaxRule:
    """Check a rule's rate is a non-negative Decimal.

    Raises:
        TaxConfigurationError: If the rate is a float, not a number or negative
    """
    if isinstance(rule.rate, float) or not isinstance(rule.rate, Decimal):
        raise TaxConfigurationError(f"Tax rate for {rule.jurisdiction_key} must be a Decimal")
    if not rule.rate.is_finite() or rule.rate < 0:
        raise TaxConfigurationError(f"Invalid tax rate for {rule.jurisdiction_key}: {rule.rate}")
    return rule


def parse_rate(key: str, raw) -> Decimal:
    """Parse a configured rate (number or string) without going through float math."""
    if isinstance(raw, bool):
        raise TaxConfigurationError(f"Invalid tax rate for {key}: {raw!r}")
    try:
        rate = Decimal(str(raw))
    except InvalidOperation:
        raise TaxConfigurationError(f"Invalid tax rate for {key}: {raw!r}")
    if not rate.is_finite() or rate < 0:
        raise TaxConfigurationError(f"Invalid tax rate for {key}: {raw!r}")
    return rate


class StaticTaxRuleSource:
    """In-memory rule set that can be swapped atomically with ``reload``."""

    def __init__(self, rules: Iterable[TaxRule] = ()):
        self._lock = threading.Lock()
        self._rules: Dict[str, Tuple[TaxRule, ...]] = self._index(rules)

    @staticmethod
    def _index(rules: Iterable[TaxRule]) -> Dict[str, Tuple[TaxRule, ...]]:
        grouped: Dict[str, List[TaxRule]] = {}
        for rule in rules:
            validate_rule(rule)
            grouped.setdefault(rule.jurisdiction_key.upper(), []).append(rule)
        return {key: tuple(value) for key, value in grouped.items()}

    def rules_for(self, key: str) -> List[TaxRule]:
        with self._lock:
            return list(self._rules.get(key.upper(), ()))

    def reload(self, rules: Iterable[TaxRule]) -> None:
        """Replace the whole rule set. Validation happens before the swap."""
        indexed = self._index(rules)
        with self._lock:
            self._rules = indexed
        logger.info("Tax rules reloaded: %d jurisdiction(s)", len(indexed))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(rules) for rules in self._rules.values())


@dataclass(frozen=True)
class TaxLine:
    rule: TaxRule
    amount: Decimal


@dataclass(frozen=True)
class TaxResult:
    jurisdiction_key: str
    lines: Tuple[TaxLine, ...]
    total: Decimal


def calculate_tax(source: TaxRuleSource, country_code: str, plan_type: str, base_amount: MoneyInput) -> TaxResult:
    """Apply every rule of the jurisdiction to ``base_amount``.

    Each rule is rounded half-up to cents on its own and the amounts summed.
    """
    base = to_money(base_amount)
    key = jurisdiction_key(country_code, plan_type)
    rules = source.rules_for(key)
    if not rules:
        logger.warning("No tax rule for %s; applying zero rate", key)
        return TaxResult(jurisdiction_key=key, lines=(), total=ZERO)

    lines = []
    for rule in rules:
        validate_rule(rule)
        amount = round_money(base * rule.rate)
        logger.info("Tax %s %s rate=%s base=%s amount=%s", key, rule.name, rule.rate, base, amount)
        lines.append(TaxLine(rule=rule, amount=amount))
    total = round_money(sum((line.amount for line in lines), ZERO))
    return TaxResult(jurisdiction_key=key, lines=tuple(lines), total=total)


def apply_tax(source: TaxRuleSource, country_code: str, plan_type: str, base_amount: MoneyInput) -> Decimal:
    """Total tax for ``base_amount`` in the given jurisdiction."""
    return calculate_tax(source, country_code, plan_type, base_amount).total


class TaxProviderRegistry:
    """Explicit name -> factory mapping for tax rule sources."""

    def __init__(self):
        self._factories: Dict[str, Callable[..., TaxRuleSource]] = {
            "static": StaticTaxRuleSource,
        }

    def register(self, name: str, factory: Callable[..., TaxRuleSource]) -> None:
        self._factories[name.lower()] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str, *args, **kwargs) -> TaxRuleSource:
        factory = self._factories.get(name.lower())
        if factory is None:
            raise UnknownProviderError(f"Unsupported tax provider: {name}")
        return factory(*args, **kwargs)
