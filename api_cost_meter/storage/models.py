"""
Data models for storage layer.

Defines the records persisted by the event store, pricing catalog,
budget and alert collections.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class CallStatus(Enum):
    """Outcome of a tracked API call."""
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class BillingCycle(Enum):
    """Informational billing cycle of a provider."""
    MONTHLY = "monthly"
    DAILY = "daily"
    PER_REQUEST = "per-request"


class AlertType(Enum):
    SPIKE = "spike"
    BUDGET = "budget"
    ERROR = "error"
    ANOMALY = "anomaly"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ApiCallEvent:
    """Immutable record of one logged API call (or a batch of identical calls).

    calculated_cost is a point-in-time snapshot taken at write time and is
    never recomputed when pricing rules change.
    """
    timestamp: datetime
    provider: str
    endpoint: str
    feature: str
    response_time_ms: int
    status: CallStatus = CallStatus.SUCCESS
    method: str = "POST"
    request_count: int = 1
    input_tokens: int = 0
    output_tokens: int = 0
    calculated_cost: float = 0.0
    status_code: Optional[int] = None
    request_body: Optional[Any] = None
    error_message: Optional[str] = None
    owner_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class PricingTier:
    """One range of cumulative billable units billed at a single rate.

    end=None means the tier is unbounded.
    """
    start: int
    end: Optional[int]
    cost_per_unit: float

    @property
    def size(self) -> Optional[int]:
        if self.end is None:
            return None
        return self.end - self.start + 1


@dataclass(frozen=True)
class PricingRule:
    """Pricing for a single provider."""
    provider: str
    cost_per_unit: float
    free_tier_limit: int = 0
    tier_pricing: List[PricingTier] = field(default_factory=list)
    billing_cycle: BillingCycle = BillingCycle.PER_REQUEST
    is_active: bool = True
    input_cost_per_1k: Optional[float] = None
    output_cost_per_1k: Optional[float] = None
    currency: str = "USD"
    description: Optional[str] = None

    def __post_init__(self):
        if self.cost_per_unit < 0:
            raise ValueError("cost_per_unit cannot be negative")
        if self.free_tier_limit < 0:
            raise ValueError("free_tier_limit cannot be negative")

    @property
    def has_token_rates(self) -> bool:
        return self.input_cost_per_1k is not None or self.output_cost_per_1k is not None


@dataclass(frozen=True)
class Budget:
    """Monthly spending limit for a provider in a "YYYY-MM" period."""
    provider: str
    period: str
    monthly_limit: float
    alert_threshold: float = 80.0
    current_spend: float = 0.0
    is_active: bool = True
    id: Optional[int] = None

    def __post_init__(self):
        if self.monthly_limit < 0:
            raise ValueError("monthly_limit cannot be negative")
        if not 0 <= self.alert_threshold <= 100:
            raise ValueError("alert_threshold must be between 0 and 100")

    @property
    def percentage_used(self) -> float:
        if self.monthly_limit == 0:
            return 0.0 if self.current_spend == 0 else float("inf")
        return self.current_spend / self.monthly_limit * 100


@dataclass(frozen=True)
class Alert:
    """Alert raised by the anomaly detector.

    Severity is fixed at detection time; only the read/resolve flags change
    afterwards.
    """
    type: AlertType
    severity: AlertSeverity
    provider: str
    title: str
    message: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    id: Optional[int] = None
