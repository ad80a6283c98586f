"""
Unit tests for configuration loading and validation.

Tests strict validation, pricing and budget parsing and environment
overrides.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from api_cost_meter.config.loader import (
    BudgetConfig,
    DetectionSettings,
    Settings,
    load_settings,
)
from api_cost_meter.errors import ValidationFailure
from api_cost_meter.storage.models import BillingCycle


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file(self):
        settings = load_settings(environ={})

        assert settings == Settings()
        assert settings.detection.spike_threshold == 3.0
        assert settings.detection.check_interval_ms == 300000
        assert settings.optimization.window_days == 7

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "database": {"path": "/tmp/meter.db"},
            "detection": {"spike_threshold": 4, "check_interval_ms": 60000},
            "optimization": {"window_days": 14},
            "logging": {"level": "DEBUG"},
            "pricing": {
                "Twilio": {
                    "cost_per_unit": 0.0075,
                    "free_tier_limit": 1000,
                    "tier_pricing": [
                        {"start": 1000, "end": None, "cost_per_unit": 0.005},
                        {"start": 0, "end": 999, "cost_per_unit": 0.01},
                    ],
                },
                "OpenAI": {
                    "cost_per_unit": 0.002,
                    "billing_cycle": "monthly",
                    "input_cost_per_1k": 0.0015,
                    "output_cost_per_1k": 0.002,
                },
            },
            "budgets": [
                {"provider": "Twilio", "monthly_limit": 500, "alert_threshold": 75},
                {"provider": "OpenAI", "monthly_limit": 1000, "period": "2024-03"},
            ],
        })

        settings = load_settings(config_path, environ={})

        assert settings.database.path == "/tmp/meter.db"
        assert settings.detection.spike_threshold == 4.0
        assert settings.detection.check_interval_ms == 60000
        assert settings.optimization.window_days == 14
        assert settings.logging.level == "DEBUG"

        twilio = settings.pricing["Twilio"]
        assert twilio.free_tier_limit == 1000
        assert [t.start for t in twilio.tier_pricing] == [0, 1000]
        assert settings.pricing["OpenAI"].billing_cycle == BillingCycle.MONTHLY
        assert settings.pricing["OpenAI"].has_token_rates

        assert settings.budgets == [
            BudgetConfig(provider="Twilio", monthly_limit=500, alert_threshold=75),
            BudgetConfig(provider="OpenAI", monthly_limit=1000, period="2024-03"),
        ]

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "missing.yaml"), environ={})

    def test_empty_file_rejected(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_settings(config_path, environ={})

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("detection: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_settings(config_path, environ={})

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"detection": {}, "surprise": 1})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(config_path, environ={})

    def test_unknown_section_key_rejected(self):
        config_path = self._write_config({"detection": {"spike_treshold": 2}})

        with pytest.raises(ValueError, match="Unknown detection keys"):
            load_settings(config_path, environ={})

    def test_boolean_is_not_a_number(self):
        config_path = self._write_config({"detection": {"spike_threshold": True}})

        with pytest.raises(ValueError, match="must be a number"):
            load_settings(config_path, environ={})

    def test_fractional_interval_rejected(self):
        config_path = self._write_config({"detection": {"check_interval_ms": 1.5}})

        with pytest.raises(ValueError, match="must be an integer"):
            load_settings(config_path, environ={})

    def test_non_positive_threshold_rejected(self):
        config_path = self._write_config({"detection": {"spike_threshold": 0}})

        with pytest.raises(ValueError, match="spike_threshold"):
            load_settings(config_path, environ={})

    def test_invalid_log_level_rejected(self):
        config_path = self._write_config({"logging": {"level": "LOUD"}})

        with pytest.raises(ValueError, match="logging level"):
            load_settings(config_path, environ={})

    def test_pricing_requires_cost_per_unit(self):
        config_path = self._write_config({"pricing": {"Twilio": {"free_tier_limit": 10}}})

        with pytest.raises(ValueError, match="cost_per_unit"):
            load_settings(config_path, environ={})

    def test_invalid_billing_cycle_rejected(self):
        config_path = self._write_config({
            "pricing": {"Twilio": {"cost_per_unit": 0.01, "billing_cycle": "hourly"}},
        })

        with pytest.raises(ValueError, match="billing_cycle"):
            load_settings(config_path, environ={})

    def test_overlapping_tiers_rejected(self):
        config_path = self._write_config({
            "pricing": {"Twilio": {
                "cost_per_unit": 0.01,
                "tier_pricing": [
                    {"start": 0, "end": 1000, "cost_per_unit": 0.01},
                    {"start": 500, "cost_per_unit": 0.005},
                ],
            }},
        })

        with pytest.raises(ValidationFailure, match="overlaps"):
            load_settings(config_path, environ={})

    def test_budget_requires_provider(self):
        config_path = self._write_config({"budgets": [{"monthly_limit": 10}]})

        with pytest.raises(ValueError, match="provider"):
            load_settings(config_path, environ={})

    def test_budget_period_validated(self):
        config_path = self._write_config({
            "budgets": [{"provider": "Twilio", "monthly_limit": 10, "period": "03/2024"}],
        })

        with pytest.raises(ValueError, match="YYYY-MM"):
            load_settings(config_path, environ={})


class TestEnvironmentOverrides:
    """Test environment variable overrides."""

    def test_spike_threshold_override(self):
        settings = load_settings(environ={"ALERT_SPIKE_THRESHOLD": "2.5"})

        assert settings.detection.spike_threshold == 2.5

    def test_check_interval_override(self):
        settings = load_settings(environ={"ALERT_CHECK_INTERVAL": "60000"})

        assert settings.detection.check_interval_ms == 60000
        assert settings.detection.spike_threshold == 3.0

    def test_invalid_threshold_override_rejected(self):
        with pytest.raises(ValueError, match="ALERT_SPIKE_THRESHOLD"):
            load_settings(environ={"ALERT_SPIKE_THRESHOLD": "high"})

    def test_invalid_interval_override_rejected(self):
        with pytest.raises(ValueError, match="milliseconds"):
            load_settings(environ={"ALERT_CHECK_INTERVAL": "5m"})

    def test_override_still_validated(self):
        with pytest.raises(ValueError, match="check_interval_ms"):
            load_settings(environ={"ALERT_CHECK_INTERVAL": "0"})

    def test_thresholds_passed_to_detector(self):
        thresholds = DetectionSettings(spike_threshold=2.0, min_error_sample=5).thresholds()

        assert thresholds.spike_threshold == 2.0
        assert thresholds.min_error_sample == 5
        assert thresholds.error_rate_threshold == 20.0
