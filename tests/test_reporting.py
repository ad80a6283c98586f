"""
Unit tests for the aggregation reporter.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from api_cost_meter.core.reporting import Reporter, TrendPeriod, dashboard_to_dict
from api_cost_meter.storage.models import CallStatus

from conftest import NOW, make_event

WINDOW_START = NOW - timedelta(days=30)


@pytest.fixture()
def seeded_events(events):
    events.insert_many([
        make_event(timestamp=NOW - timedelta(days=2), provider="Twilio", feature="OTP Login",
                   request_count=10, calculated_cost=0.075, response_time_ms=100),
        make_event(timestamp=NOW - timedelta(days=2, hours=1), provider="OpenAI", feature="AI Chatbot",
                   request_count=1, calculated_cost=0.5, response_time_ms=900),
        make_event(timestamp=NOW - timedelta(days=1), provider="OpenAI", feature="AI Chatbot",
                   request_count=1, calculated_cost=0.25, response_time_ms=500,
                   status=CallStatus.FAILURE),
        make_event(timestamp=NOW - timedelta(days=1), provider="Twilio", feature="Password Reset",
                   request_count=2, calculated_cost=0.015, response_time_ms=300),
        # outside the window
        make_event(timestamp=NOW - timedelta(days=40), provider="Stripe", calculated_cost=9.0),
    ])
    return events


class TestDashboard:
    """Test dashboard totals and breakdowns."""

    def test_totals(self, seeded_events):
        dashboard = Reporter(seeded_events).get_dashboard(WINDOW_START, NOW)

        totals = dashboard.totals
        assert totals.total_cost == pytest.approx(0.84)
        assert totals.total_requests == 14
        assert totals.success_count == 13
        assert totals.failure_count == 1
        # unweighted mean over the four records
        assert totals.avg_response_time == pytest.approx(450.0)

    def test_cost_by_provider_sorted_desc(self, seeded_events):
        dashboard = Reporter(seeded_events).get_dashboard(WINDOW_START, NOW)

        assert [p.provider for p in dashboard.cost_by_provider] == ["OpenAI", "Twilio"]
        assert dashboard.cost_by_provider[0].total_cost == pytest.approx(0.75)
        assert dashboard.top_expensive == dashboard.cost_by_provider

    def test_cost_by_feature_keyed_by_feature_and_provider(self, seeded_events):
        dashboard = Reporter(seeded_events).get_dashboard(WINDOW_START, NOW)

        keys = [(f.feature, f.provider) for f in dashboard.cost_by_feature]
        assert keys == [
            ("AI Chatbot", "OpenAI"),
            ("OTP Login", "Twilio"),
            ("Password Reset", "Twilio"),
        ]

    def test_daily_trends_only_days_with_data(self, seeded_events):
        dashboard = Reporter(seeded_events).get_dashboard(WINDOW_START, NOW)

        assert [t.bucket for t in dashboard.daily_trends] == ["2024-03-13", "2024-03-14"]

    def test_filters_apply_to_breakdowns(self, seeded_events):
        dashboard = Reporter(seeded_events).get_dashboard(WINDOW_START, NOW, provider="Twilio")

        assert dashboard.totals.total_requests == 12
        assert [p.provider for p in dashboard.cost_by_provider] == ["Twilio"]
        assert {f.provider for f in dashboard.cost_by_feature} == {"Twilio"}

    def test_dashboard_is_idempotent(self, seeded_events):
        reporter = Reporter(seeded_events)

        first = dashboard_to_dict(reporter.get_dashboard(WINDOW_START, NOW))
        second = dashboard_to_dict(reporter.get_dashboard(WINDOW_START, NOW))

        assert first == second

    def test_empty_window(self, events):
        dashboard = Reporter(events).get_dashboard(WINDOW_START, NOW)

        assert dashboard.totals.total_cost == 0.0
        assert dashboard.cost_by_provider == []
        assert dashboard.daily_trends == []

    def test_store_failure_degrades_to_empty(self):
        broken = Mock()
        broken.aggregate.side_effect = RuntimeError("database is locked")

        dashboard = Reporter(broken).get_dashboard(WINDOW_START, NOW)

        assert dashboard.totals.total_requests == 0
        assert dashboard.cost_by_provider == []
        assert dashboard.cost_by_feature == []
        assert dashboard.daily_trends == []


class TestCostTrends:
    """Test trend granularity."""

    def test_daily_trend(self, seeded_events):
        points = Reporter(seeded_events).get_cost_trends(TrendPeriod.DAILY, days=30, now=NOW)

        assert [p.bucket for p in points] == ["2024-03-13", "2024-03-14"]
        assert points[0].total_requests == 11

    def test_hourly_trend(self, seeded_events):
        points = Reporter(seeded_events).get_cost_trends(TrendPeriod.HOURLY, days=30, now=NOW)

        assert [p.bucket for p in points] == [
            "2024-03-13 11:00",
            "2024-03-13 12:00",
            "2024-03-14 12:00",
        ]

    def test_weekly_trend(self, events):
        events.insert_many([
            make_event(timestamp=datetime(2024, 3, 4, 9, 0)),
            make_event(timestamp=datetime(2024, 3, 10, 9, 0)),
            make_event(timestamp=datetime(2024, 3, 11, 9, 0)),
        ])

        points = Reporter(events).get_cost_trends(TrendPeriod.WEEKLY, days=30, now=NOW)

        assert [(p.bucket, p.total_requests) for p in points] == [
            ("2024-W10", 2),
            ("2024-W11", 1),
        ]

    def test_window_excludes_older_events(self, seeded_events):
        points = Reporter(seeded_events).get_cost_trends(TrendPeriod.DAILY, days=1, now=NOW)

        assert [p.bucket for p in points] == ["2024-03-14"]


class TestLogs:
    """Test the paginated event log."""

    def test_pagination(self, seeded_events):
        reporter = Reporter(seeded_events)

        page = reporter.get_logs(page=2, limit=2)

        assert page.total == 5
        assert page.pages == 3
        assert page.page == 2
        assert len(page.events) == 2

    def test_filters(self, seeded_events):
        page = Reporter(seeded_events).get_logs(provider="OpenAI", status=CallStatus.FAILURE)

        assert page.total == 1
        assert page.events[0].calculated_cost == 0.25

    def test_distinct_providers_and_features(self, seeded_events):
        reporter = Reporter(seeded_events)

        assert reporter.list_providers() == ["OpenAI", "Stripe", "Twilio"]
        assert "AI Chatbot" in reporter.list_features()
