"""
Unit tests for anomaly detection.

Tests spike, budget and error-rate checks, their severity bands, alert
dedup and fault isolation.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from api_cost_meter.core.anomaly import (
    AnomalyDetector,
    DetectionThresholds,
    budget_severity,
    spike_severity,
)
from api_cost_meter.storage.models import AlertSeverity, AlertType, Budget, CallStatus

from conftest import NOW, make_event


@pytest.fixture()
def detector(events, budgets, alerts):
    return AnomalyDetector(events, budgets, alerts, clock=lambda: NOW)


class TestSpikeDetection:
    """Test trailing-hour volume against the prior 23 hours."""

    def seed_baseline(self, events, avg_hourly=10, provider="Twilio"):
        # one record two hours back carries the whole 23-hour baseline
        events.insert(make_event(
            timestamp=NOW - timedelta(hours=2),
            provider=provider,
            request_count=avg_hourly * 23,
        ))

    def seed_current(self, events, requests, provider="Twilio"):
        events.insert(make_event(
            timestamp=NOW - timedelta(minutes=30),
            provider=provider,
            request_count=requests,
        ))

    def test_ratio_at_threshold_alerts_high(self, detector, events):
        self.seed_baseline(events)
        self.seed_current(events, 30)

        created = detector.detect_spikes(NOW)

        assert len(created) == 1
        alert = created[0]
        assert alert.type == AlertType.SPIKE
        assert alert.severity == AlertSeverity.HIGH
        assert alert.metadata["current_hour_requests"] == 30
        assert alert.metadata["avg_hourly_requests"] == 10.0
        assert alert.metadata["increase_ratio"] == 3.0
        assert alert.metadata["percent_increase"] == 200
        assert "200%" in alert.message

    def test_ratio_below_threshold_no_alert(self, detector, events):
        self.seed_baseline(events)
        self.seed_current(events, 29)

        assert detector.detect_spikes(NOW) == []

    def test_ratio_above_five_is_critical(self, detector, events):
        self.seed_baseline(events)
        self.seed_current(events, 51)

        created = detector.detect_spikes(NOW)

        assert created[0].severity == AlertSeverity.CRITICAL

    def test_no_baseline_no_alert(self, detector, events):
        self.seed_current(events, 500, provider="NewProvider")

        assert detector.detect_spikes(NOW) == []

    def test_baseline_excludes_current_hour(self, detector, events):
        # exactly one hour back belongs to the current window
        events.insert(make_event(timestamp=NOW - timedelta(hours=1), request_count=230))
        self.seed_current(events, 30)

        assert detector.detect_spikes(NOW) == []

    def test_dedup_within_hour(self, detector, events, alerts):
        self.seed_baseline(events)
        self.seed_current(events, 30)

        first = detector.detect_spikes(NOW)
        second = detector.detect_spikes(NOW + timedelta(minutes=5))

        assert len(first) == 1
        assert second == []
        assert len(alerts.list(alert_type=AlertType.SPIKE)) == 1

    def test_resolved_alert_does_not_suppress(self, detector, events, alerts):
        self.seed_baseline(events)
        self.seed_current(events, 30)

        first = detector.detect_spikes(NOW)
        alerts.resolve(first[0].id, NOW, "ops")

        assert len(detector.detect_spikes(NOW)) == 1

    def test_configurable_threshold(self, events, budgets, alerts):
        self.seed_baseline(events)
        self.seed_current(events, 20)
        detector = AnomalyDetector(
            events, budgets, alerts, thresholds=DetectionThresholds(spike_threshold=2.0)
        )

        assert len(detector.detect_spikes(NOW)) == 1

    def test_severity_helper(self):
        assert spike_severity(4.99) == AlertSeverity.HIGH
        assert spike_severity(5.0) == AlertSeverity.CRITICAL


class TestBudgetCheck:
    """Test budget threshold alerts."""

    @pytest.mark.parametrize("spend,severity", [
        (81.0, AlertSeverity.MEDIUM),
        (91.0, AlertSeverity.HIGH),
        (100.0, AlertSeverity.CRITICAL),
        (130.0, AlertSeverity.CRITICAL),
    ])
    def test_severity_bands(self, detector, budgets, spend, severity):
        budgets.create(Budget(
            provider="Twilio", period="2024-03", monthly_limit=100,
            alert_threshold=80, current_spend=spend,
        ))

        created = detector.check_budgets(NOW)

        assert len(created) == 1
        assert created[0].severity == severity
        assert created[0].metadata["period"] == "2024-03"

    def test_below_threshold_no_alert(self, detector, budgets):
        budgets.create(Budget(
            provider="Twilio", period="2024-03", monthly_limit=100,
            alert_threshold=80, current_spend=79.99,
        ))

        assert detector.check_budgets(NOW) == []

    def test_other_periods_ignored(self, detector, budgets):
        budgets.create(Budget(
            provider="Twilio", period="2024-02", monthly_limit=100, current_spend=150,
        ))

        assert detector.check_budgets(NOW) == []

    def test_zero_limit_skipped(self, detector, budgets):
        budgets.create(Budget(
            provider="Twilio", period="2024-03", monthly_limit=0, current_spend=5,
        ))

        assert detector.check_budgets(NOW) == []

    def test_dedup_for_whole_period(self, detector, budgets):
        budgets.create(Budget(
            provider="Twilio", period="2024-03", monthly_limit=100, current_spend=85,
        ))

        assert len(detector.check_budgets(NOW)) == 1
        # days later in the same month
        assert detector.check_budgets(NOW + timedelta(days=10)) == []

    def test_reads_recorded_spend_only(self, detector, budgets, events):
        budgets.create(Budget(provider="Twilio", period="2024-03", monthly_limit=100))
        events.insert(make_event(calculated_cost=500.0))

        assert detector.check_budgets(NOW) == []

    def test_severity_helper(self):
        assert budget_severity(89.99) == AlertSeverity.MEDIUM
        assert budget_severity(90) == AlertSeverity.HIGH


class TestErrorRate:
    """Test error-rate alerts and the minimum sample guard."""

    def seed(self, events, total, failed, provider="Twilio"):
        events.insert_many([
            make_event(
                timestamp=NOW - timedelta(minutes=10),
                provider=provider,
                status=CallStatus.FAILURE if i < failed else CallStatus.SUCCESS,
            )
            for i in range(total)
        ])

    def test_below_minimum_sample_no_alert(self, detector, events):
        self.seed(events, total=5, failed=1)

        assert detector.detect_high_error_rates(NOW) == []

    def test_minimum_sample_alerts(self, detector, events):
        self.seed(events, total=10, failed=2)

        created = detector.detect_high_error_rates(NOW)

        assert len(created) == 1
        assert created[0].severity == AlertSeverity.HIGH
        assert created[0].metadata == {
            "total_requests": 10,
            "failed_requests": 2,
            "error_rate": 20.0,
        }

    def test_half_failing_is_critical(self, detector, events):
        self.seed(events, total=10, failed=5)

        assert detector.detect_high_error_rates(NOW)[0].severity == AlertSeverity.CRITICAL

    def test_error_status_counts_as_failed(self, detector, events):
        events.insert_many(
            [make_event(timestamp=NOW - timedelta(minutes=1), status=CallStatus.ERROR)] * 3
            + [make_event(timestamp=NOW - timedelta(minutes=1))] * 7
        )

        assert len(detector.detect_high_error_rates(NOW)) == 1

    def test_old_failures_ignored(self, detector, events):
        events.insert_many([
            make_event(timestamp=NOW - timedelta(hours=2), status=CallStatus.FAILURE)
            for _ in range(10)
        ])

        assert detector.detect_high_error_rates(NOW) == []

    def test_dedup_within_hour(self, detector, events):
        self.seed(events, total=10, failed=5)

        assert len(detector.detect_high_error_rates(NOW)) == 1
        assert detector.detect_high_error_rates(NOW) == []


class TestRunAllChecks:
    """Test the combined run and fault isolation."""

    def test_collects_all_alert_types(self, detector, events, budgets):
        TestSpikeDetection().seed_baseline(events)
        TestSpikeDetection().seed_current(events, 60)
        budgets.create(Budget(provider="Twilio", period="2024-03", monthly_limit=10, current_spend=10))
        events.insert_many([
            make_event(timestamp=NOW - timedelta(minutes=5), provider="OpenAI", status=CallStatus.FAILURE)
            for _ in range(10)
        ])

        result = detector.run_all_checks()

        assert len(result.spike_alerts) == 1
        assert len(result.budget_alerts) == 1
        assert len(result.error_alerts) == 1
        assert result.total == 3

    def test_failing_check_does_not_stop_others(self, detector, budgets):
        budgets.create(Budget(provider="Twilio", period="2024-03", monthly_limit=10, current_spend=10))

        with patch.object(detector.events, "aggregate", side_effect=RuntimeError("query failed")):
            result = detector.run_all_checks(NOW)

        assert result.spike_alerts == []
        assert result.error_alerts == []
        assert len(result.budget_alerts) == 1
        assert result.total == 1

    def test_repeated_runs_are_idempotent(self, detector, events):
        TestSpikeDetection().seed_baseline(events)
        TestSpikeDetection().seed_current(events, 60)

        assert detector.run_all_checks(NOW).total == 1
        assert detector.run_all_checks(NOW).total == 0
