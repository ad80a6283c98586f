"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..core.anomaly import DetectionThresholds
from ..core.optimization import DEFAULT_WINDOW_DAYS
from ..core.periods import validate_period
from ..core.pricing import validate_tiers
from ..core.scheduler import DEFAULT_CHECK_INTERVAL_MS
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import BillingCycle, PricingRule, PricingTier

ENV_SPIKE_THRESHOLD = "ALERT_SPIKE_THRESHOLD"
ENV_CHECK_INTERVAL = "ALERT_CHECK_INTERVAL"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class DatabaseSettings:
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class DetectionSettings:
    """Anomaly detection thresholds and schedule."""
    spike_threshold: float = 3.0
    check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS
    error_rate_threshold: float = 20.0
    min_error_sample: int = 10

    def __post_init__(self):
        if self.spike_threshold <= 0:
            raise ValueError("spike_threshold must be > 0")
        if self.check_interval_ms <= 0:
            raise ValueError("check_interval_ms must be > 0")
        if not 0 < self.error_rate_threshold <= 100:
            raise ValueError("error_rate_threshold must be in (0, 100]")
        if self.min_error_sample < 1:
            raise ValueError("min_error_sample must be >= 1")

    def thresholds(self) -> DetectionThresholds:
        return DetectionThresholds(
            spike_threshold=self.spike_threshold,
            error_rate_threshold=self.error_rate_threshold,
            min_error_sample=self.min_error_sample,
        )


@dataclass(frozen=True)
class OptimizationSettings:
    window_days: int = DEFAULT_WINDOW_DAYS

    def __post_init__(self):
        if self.window_days <= 0:
            raise ValueError("window_days must be > 0")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"

    def __post_init__(self):
        if not isinstance(self.level, str) or self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(_LOG_LEVELS)}")


@dataclass(frozen=True)
class BudgetConfig:
    """Budget declared in the config file, created by `init --config`."""
    provider: str
    monthly_limit: float
    alert_threshold: float = 80.0
    period: Optional[str] = None

    def __post_init__(self):
        if self.monthly_limit < 0:
            raise ValueError("monthly_limit cannot be negative")
        if not 0 <= self.alert_threshold <= 100:
            raise ValueError("alert_threshold must be between 0 and 100")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    optimization: OptimizationSettings = field(default_factory=OptimizationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    pricing: Dict[str, PricingRule] = field(default_factory=dict)
    budgets: List[BudgetConfig] = field(default_factory=list)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load and validate settings from a YAML file and the environment.

    Without a path the defaults are used. Environment variables override
    the file.

    Args:
        path: Path to YAML configuration file (optional)
        environ: Environment mapping, os.environ by default

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    settings = Settings() if path is None else _load_file(path)
    return _apply_env_overrides(settings, os.environ if environ is None else environ)


def _load_file(path: str) -> Settings:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'detection', 'optimization', 'logging', 'pricing', 'budgets'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = DatabaseSettings(**_section(raw_config, 'database', {'path'}))

    detection_data = _section(
        raw_config,
        'detection',
        {'spike_threshold', 'check_interval_ms', 'error_rate_threshold', 'min_error_sample'},
    )
    detection = DetectionSettings(**{
        key: _number(value, f"detection.{key}", integer=key in ('check_interval_ms', 'min_error_sample'))
        for key, value in detection_data.items()
    })

    optimization_data = _section(raw_config, 'optimization', {'window_days'})
    optimization = OptimizationSettings(**{
        key: _number(value, f"optimization.{key}", integer=True)
        for key, value in optimization_data.items()
    })

    logging_settings = LoggingSettings(**_section(raw_config, 'logging', {'level'}))

    pricing_data = raw_config.get('pricing', {})
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    pricing = {
        provider: _parse_pricing_rule(provider, rule_data)
        for provider, rule_data in pricing_data.items()
    }

    budgets_data = raw_config.get('budgets', [])
    if not isinstance(budgets_data, list):
        raise ValueError("'budgets' must be a list")
    budgets = [_parse_budget(item, f"budgets[{i}]") for i, item in enumerate(budgets_data)]

    return Settings(
        database=database,
        detection=detection,
        optimization=optimization,
        logging=logging_settings,
        pricing=pricing,
        budgets=budgets,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(value: Any, path: str, integer: bool = False):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if integer:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{path}' must be an integer")
        return int(value)
    return float(value)


def _parse_pricing_rule(provider: str, data: Any) -> PricingRule:
    """Parse and validate one provider's pricing rule.

    Raises:
        ValueError: If the rule is invalid
    """
    path = f"pricing.{provider}"
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {
        'cost_per_unit', 'free_tier_limit', 'tier_pricing', 'billing_cycle',
        'is_active', 'input_cost_per_1k', 'output_cost_per_1k', 'currency',
        'description',
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'cost_per_unit' not in data:
        raise ValueError(f"Missing required 'cost_per_unit' in {path}")

    cycle = data.get('billing_cycle', BillingCycle.PER_REQUEST.value)
    try:
        billing_cycle = BillingCycle(str(cycle).lower())
    except ValueError:
        valid_cycles = [c.value for c in BillingCycle]
        raise ValueError(f"'billing_cycle' in {path} must be one of: {valid_cycles}")

    tiers_data = data.get('tier_pricing', [])
    if not isinstance(tiers_data, list):
        raise ValueError(f"'tier_pricing' in {path} must be a list")
    tiers = validate_tiers([_parse_tier(t, f"{path}.tier_pricing[{i}]") for i, t in enumerate(tiers_data)])

    def optional_rate(key: str) -> Optional[float]:
        if data.get(key) is None:
            return None
        return _number(data[key], f"{path}.{key}")

    return PricingRule(
        provider=provider,
        cost_per_unit=_number(data['cost_per_unit'], f"{path}.cost_per_unit"),
        free_tier_limit=_number(data.get('free_tier_limit', 0), f"{path}.free_tier_limit", integer=True),
        tier_pricing=tiers,
        billing_cycle=billing_cycle,
        is_active=bool(data.get('is_active', True)),
        input_cost_per_1k=optional_rate('input_cost_per_1k'),
        output_cost_per_1k=optional_rate('output_cost_per_1k'),
        currency=str(data.get('currency', 'USD')),
        description=data.get('description'),
    )


def _parse_tier(data: Any, path: str) -> PricingTier:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - {'start', 'end', 'cost_per_unit'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in ('start', 'cost_per_unit'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    end = data.get('end')
    return PricingTier(
        start=_number(data['start'], f"{path}.start", integer=True),
        end=None if end is None else _number(end, f"{path}.end", integer=True),
        cost_per_unit=_number(data['cost_per_unit'], f"{path}.cost_per_unit"),
    )


def _parse_budget(data: Any, path: str) -> BudgetConfig:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - {'provider', 'monthly_limit', 'alert_threshold', 'period'}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in ('provider', 'monthly_limit'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    period = data.get('period')
    return BudgetConfig(
        provider=str(data['provider']),
        monthly_limit=_number(data['monthly_limit'], f"{path}.monthly_limit"),
        alert_threshold=_number(data.get('alert_threshold', 80), f"{path}.alert_threshold"),
        period=validate_period(str(period)) if period is not None else None,
    )


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}

    if environ.get(ENV_SPIKE_THRESHOLD):
        try:
            overrides['spike_threshold'] = float(environ[ENV_SPIKE_THRESHOLD])
        except ValueError:
            raise ValueError(f"{ENV_SPIKE_THRESHOLD} must be a number")

    if environ.get(ENV_CHECK_INTERVAL):
        try:
            overrides['check_interval_ms'] = int(environ[ENV_CHECK_INTERVAL])
        except ValueError:
            raise ValueError(f"{ENV_CHECK_INTERVAL} must be an integer (milliseconds)")

    if not overrides:
        return settings
    return replace(settings, detection=replace(settings.detection, **overrides))
