"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for billing engine configs.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from tenant_billing.config.loader import (
    BillingConfig,
    EngineConfig,
    PolicyConfig,
    TimeoutConfig,
    WebhookConfig,
    load_engine_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "billing.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a complete configuration loads correctly."""
        config_data = {
            "billing": {"max_retries": 5, "payment_terms_days": 30, "currency": "cop"},
            "timeouts": {"gateway": 15, "orchestrator": 2.5},
            "tax_rules": [
                {"jurisdiction": "co-premium", "rate": "0.19", "name": "IVA"},
                {"jurisdiction": "US-PRO", "rate": 0.0625},
            ],
            "plans": {
                "premium": {"plan_type": "premium", "amount": "1000.00"},
                "pro": {"plan_type": "PRO", "amount": 1200, "currency": "usd"},
            },
            "policies": {
                "defaults": {"grace_days": 10, "warning_days": 2},
            },
        }

        config = load_engine_config(self._write_config(config_data))

        assert config.billing.max_retries == 5
        assert config.billing.payment_terms_days == 30
        assert config.billing.currency == "COP"
        assert config.timeouts.gateway == 15.0
        assert config.timeouts.orchestrator == 2.5
        assert config.timeouts.usage == 5.0

        assert config.tax_rules[0].jurisdiction_key == "CO-PREMIUM"
        assert config.tax_rules[0].rate == Decimal("0.19")
        assert config.tax_rules[1].rate == Decimal("0.0625")
        assert config.tax_rules[1].name == "tax"

        assert config.plans["premium"].plan_type == "PREMIUM"
        assert config.plans["premium"].amount == Decimal("1000.00")
        assert config.plans["premium"].currency == "COP"
        assert config.plans["pro"].currency == "USD"

        assert config.policy_defaults.grace_days == 10
        assert config.policy_defaults.warning_days == 2

    def test_minimal_config_uses_defaults(self):
        """Test that a config with only one section loads with defaults elsewhere."""
        config = load_engine_config(self._write_config({"billing": {"max_retries": 1}}))

        assert config.billing.payment_terms_days == 14
        assert config.billing.signature_format == "XAdES-BES"
        assert config.timeouts == TimeoutConfig()
        assert config.tax_rules == ()
        assert config.plans == {}
        assert config.policy_defaults == PolicyConfig()

    def test_tenant_policy_merges_over_defaults(self):
        """Test tenant overrides keep unset values from the defaults block."""
        config_data = {
            "policies": {
                "defaults": {"grace_days": 10, "auto_reactivate": False},
                "tenants": {
                    "acme": {"cancel_instead_of_suspend": True, "payment_required_modes": ["AUTOMATIC"]},
                },
            },
        }

        config = load_engine_config(self._write_config(config_data))

        acme = config.policy_for("acme")
        assert acme.cancel_instead_of_suspend is True
        assert acme.grace_days == 10
        assert acme.auto_reactivate is False
        assert acme.payment_required_modes == frozenset({"automatic"})
        assert config.policy_for("globex") == config.policy_defaults

    def test_unknown_top_level_key_raises_error(self):
        """Test that typos at the top level are rejected."""
        config_path = self._write_config({"billing": {}, "biling": {}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_engine_config(config_path)

    def test_unknown_nested_key_raises_error(self):
        """Test that typos inside a section are rejected."""
        config_path = self._write_config({"policies": {"defaults": {"grace_dayz": 3}}})
        with pytest.raises(ValueError, match="grace_dayz"):
            load_engine_config(config_path)

    def test_webhook_section_loads(self):
        """Test the notification webhook block."""
        config_data = {
            "webhook": {"url": "https://hooks.example.com/billing", "secret": "s3cret", "kinds": ["invoice_paid"]},
        }

        config = load_engine_config(self._write_config(config_data))

        assert config.webhook.enabled
        assert config.webhook.url == "https://hooks.example.com/billing"
        assert config.webhook.secret == "s3cret"
        assert config.webhook.kinds == frozenset({"invoice_paid"})

    def test_webhook_unknown_key_raises_error(self):
        config_path = self._write_config({"webhook": {"url": "https://hooks.example.com", "token": "x"}})
        with pytest.raises(ValueError, match="token"):
            load_engine_config(config_path)

    def test_negative_tax_rate_raises_error(self):
        config_path = self._write_config({"tax_rules": [{"jurisdiction": "CO-PREMIUM", "rate": -0.1}]})
        with pytest.raises(ValueError, match="tax_rules\\[0\\]"):
            load_engine_config(config_path)

    def test_missing_plan_amount_raises_error(self):
        config_path = self._write_config({"plans": {"premium": {"plan_type": "PREMIUM"}}})
        with pytest.raises(ValueError, match="amount"):
            load_engine_config(config_path)

    def test_unknown_fail_on_reason_raises_error(self):
        config_path = self._write_config({"policies": {"defaults": {"fail_on_reasons": ["NOT_A_REASON"]}}})
        with pytest.raises(ValueError, match="fail_on_reasons"):
            load_engine_config(config_path)

    def test_boolean_is_not_an_integer(self):
        config_path = self._write_config({"billing": {"max_retries": True}})
        with pytest.raises(ValueError, match="max_retries"):
            load_engine_config(config_path)

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError):
            load_engine_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="empty"):
            load_engine_config(config_path)

    def test_invalid_yaml_raises_error(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("billing: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_engine_config(config_path)


class TestConfigValidation:
    """Test dataclass-level validation."""

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            BillingConfig(max_retries=-1)

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError):
            TimeoutConfig(gateway=0)

    def test_unknown_renewal_mode_rejected(self):
        with pytest.raises(ValueError):
            PolicyConfig(payment_required_modes=frozenset({"weekly"}))

    def test_engine_config_defaults(self):
        config = EngineConfig()
        assert config.billing.max_retries == 3
        assert config.policy_for("anyone").grace_days == 7
        assert not config.webhook.enabled

    def test_webhook_url_must_be_http(self):
        with pytest.raises(ValueError):
            WebhookConfig(url="ftp://hooks.example.com")
