"""
Anomaly detection over the event stream.

Three independent checks raise persisted alerts:
- Spike: trailing-hour volume vs the average hour of the 23 hours before it
- Budget: last recomputed spend vs the budget's alert threshold
- Error rate: share of non-successful requests in the trailing hour

Every check suppresses a new alert when an equivalent unresolved one
already exists, so overlapping runs are safe.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional

import structlog

from ..storage.models import Alert, AlertSeverity, AlertType, Budget
from ..storage.query import Aggregation, EventQuery, GroupField
from ..storage.repository import AlertRepository, BudgetRepository, EventRepository
from .periods import current_period

logger = structlog.get_logger()

ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(hours=24)
# hours in the baseline window (the trailing day minus the current hour)
BASELINE_HOURS = 23


@dataclass(frozen=True)
class DetectionThresholds:
    """Tunable thresholds for the anomaly checks."""
    spike_threshold: float = 3.0
    spike_critical_ratio: float = 5.0
    error_rate_threshold: float = 20.0
    error_rate_critical: float = 50.0
    min_error_sample: int = 10

    def __post_init__(self):
        if self.spike_threshold <= 0:
            raise ValueError("spike_threshold must be > 0")
        if not 0 < self.error_rate_threshold <= 100:
            raise ValueError("error_rate_threshold must be in (0, 100]")
        if self.min_error_sample < 1:
            raise ValueError("min_error_sample must be >= 1")


@dataclass
class AnomalyCheckResult:
    """Alerts created by one run of all checks."""
    spike_alerts: List[Alert] = field(default_factory=list)
    budget_alerts: List[Alert] = field(default_factory=list)
    error_alerts: List[Alert] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.spike_alerts) + len(self.budget_alerts) + len(self.error_alerts)


def _round_half_up(value: float, places: int = 0) -> float:
    exponent = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(exponent, rounding=ROUND_HALF_UP))


def spike_severity(ratio: float, critical_ratio: float = 5.0) -> AlertSeverity:
    return AlertSeverity.CRITICAL if ratio >= critical_ratio else AlertSeverity.HIGH


def budget_severity(percentage: float) -> AlertSeverity:
    if percentage >= 100:
        return AlertSeverity.CRITICAL
    if percentage >= 90:
        return AlertSeverity.HIGH
    return AlertSeverity.MEDIUM


def error_severity(error_rate: float, critical_rate: float = 50.0) -> AlertSeverity:
    return AlertSeverity.CRITICAL if error_rate >= critical_rate else AlertSeverity.HIGH


class AnomalyDetector:
    """Runs the spike, budget and error-rate checks against the store.

    The same instance serves the scheduled run and on-demand runs.
    """

    def __init__(
        self,
        events: EventRepository,
        budgets: BudgetRepository,
        alerts: AlertRepository,
        thresholds: Optional[DetectionThresholds] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.events = events
        self.budgets = budgets
        self.alerts = alerts
        self.thresholds = thresholds or DetectionThresholds()
        self.clock = clock

    def _requests_by_provider(self, query: EventQuery) -> Dict[str, int]:
        rows = self.events.aggregate(query, Aggregation(group_by=(GroupField.PROVIDER,)))
        return {row.key[0]: row.total_requests for row in rows}

    def _create(self, alert: Alert) -> Alert:
        stored = self.alerts.create(alert)
        logger.info(
            "alert_created",
            alert_id=stored.id,
            type=stored.type.value,
            severity=stored.severity.value,
            provider=stored.provider,
        )
        return stored

    def detect_spikes(self, now: Optional[datetime] = None) -> List[Alert]:
        """Detect usage spikes; returns newly created alerts, [] on failure."""
        now = now or self.clock()
        try:
            return self._detect_spikes(now)
        except Exception:
            logger.exception("spike_check_failed")
            return []

    def _detect_spikes(self, now: datetime) -> List[Alert]:
        hour_ago = now - ONE_HOUR
        day_ago = now - ONE_DAY

        current = self._requests_by_provider(EventQuery(start=hour_ago, end=now))
        baseline = self._requests_by_provider(EventQuery(start=day_ago, before=hour_ago))

        created = []
        for provider, current_requests in current.items():
            past_requests = baseline.get(provider, 0)
            # a provider without history has no baseline to spike against
            if past_requests <= 0:
                continue

            avg_hourly = past_requests / BASELINE_HOURS
            ratio = current_requests / avg_hourly
            if ratio < self.thresholds.spike_threshold:
                continue

            if self.alerts.find_open(AlertType.SPIKE, provider, created_since=hour_ago):
                logger.debug("alert_suppressed", type="spike", provider=provider)
                continue

            percent_increase = int(_round_half_up((ratio - 1) * 100))
            created.append(self._create(Alert(
                type=AlertType.SPIKE,
                severity=spike_severity(ratio, self.thresholds.spike_critical_ratio),
                provider=provider,
                title=f"{provider} Usage Spike Detected",
                message=(
                    f"{provider} API usage increased by {percent_increase}% in the last hour "
                    f"({current_requests} requests vs avg {avg_hourly:.0f})"
                ),
                metadata={
                    "current_hour_requests": current_requests,
                    "avg_hourly_requests": _round_half_up(avg_hourly, 2),
                    "increase_ratio": _round_half_up(ratio, 2),
                    "percent_increase": percent_increase,
                },
                created_at=now,
            )))
        return created

    def check_budgets(self, now: Optional[datetime] = None) -> List[Alert]:
        """Raise alerts for budgets past their threshold; [] on failure."""
        now = now or self.clock()
        try:
            return self._check_budgets(now)
        except Exception:
            logger.exception("budget_check_failed")
            return []

    def _check_budgets(self, now: datetime) -> List[Alert]:
        period = current_period(now)
        created = []
        for budget in self.budgets.list_active(period):
            alert = self._budget_alert(budget, period, now)
            if alert is not None:
                created.append(alert)
        return created

    def _budget_alert(self, budget: Budget, period: str, now: datetime) -> Optional[Alert]:
        if budget.monthly_limit <= 0:
            logger.debug("budget_skipped_zero_limit", provider=budget.provider)
            return None

        percentage = budget.current_spend / budget.monthly_limit * 100
        if percentage < budget.alert_threshold:
            return None

        # budget alerts stay open for the whole period once raised
        if self.alerts.find_open(AlertType.BUDGET, budget.provider, period=period):
            logger.debug("alert_suppressed", type="budget", provider=budget.provider)
            return None

        return self._create(Alert(
            type=AlertType.BUDGET,
            severity=budget_severity(percentage),
            provider=budget.provider,
            title=f"Budget Alert: {budget.provider}",
            message=(
                f"{budget.provider} has used {percentage:.1f}% of monthly budget "
                f"(${budget.current_spend:.2f} / ${budget.monthly_limit:.2f})"
            ),
            metadata={
                "current_spend": budget.current_spend,
                "monthly_limit": budget.monthly_limit,
                "percentage": _round_half_up(percentage, 2),
                "period": period,
            },
            created_at=now,
        ))

    def detect_high_error_rates(self, now: Optional[datetime] = None) -> List[Alert]:
        """Raise alerts for providers failing too often; [] on failure."""
        now = now or self.clock()
        try:
            return self._detect_high_error_rates(now)
        except Exception:
            logger.exception("error_rate_check_failed")
            return []

    def _detect_high_error_rates(self, now: datetime) -> List[Alert]:
        hour_ago = now - ONE_HOUR
        rows = self.events.aggregate(
            EventQuery(start=hour_ago, end=now),
            Aggregation(group_by=(GroupField.PROVIDER,)),
        )

        created = []
        for row in rows:
            provider = row.key[0]
            total = row.total_requests
            failed = row.failed_requests
            if total <= 0:
                continue

            error_rate = failed / total * 100
            if error_rate < self.thresholds.error_rate_threshold:
                continue
            # too few requests to tell a failing provider from noise
            if total < self.thresholds.min_error_sample:
                continue

            if self.alerts.find_open(AlertType.ERROR, provider, created_since=hour_ago):
                logger.debug("alert_suppressed", type="error", provider=provider)
                continue

            created.append(self._create(Alert(
                type=AlertType.ERROR,
                severity=error_severity(error_rate, self.thresholds.error_rate_critical),
                provider=provider,
                title=f"High Error Rate: {provider}",
                message=(
                    f"{provider} API has {error_rate:.1f}% error rate "
                    f"({failed}/{total} requests failed)"
                ),
                metadata={
                    "total_requests": total,
                    "failed_requests": failed,
                    "error_rate": _round_half_up(error_rate, 2),
                },
                created_at=now,
            )))
        return created

    def run_all_checks(self, now: Optional[datetime] = None) -> AnomalyCheckResult:
        """Run every check independently and collect the new alerts."""
        now = now or self.clock()
        result = AnomalyCheckResult(
            spike_alerts=self.detect_spikes(now),
            budget_alerts=self.check_budgets(now),
            error_alerts=self.detect_high_error_rates(now),
        )
        logger.info(
            "anomaly_checks_complete",
            spikes=len(result.spike_alerts),
            budgets=len(result.budget_alerts),
            errors=len(result.error_alerts),
            total=result.total,
        )
        return result
