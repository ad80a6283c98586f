"""
Unit tests for demo data seeding.
"""

import random
from datetime import timedelta

import pytest

from api_cost_meter.demo.seed_demo_data import (
    DEMO_PRICING,
    generate_demo_events,
    seed_demo_data,
)
from api_cost_meter.storage.models import CallStatus
from api_cost_meter.storage.query import EventQuery

from conftest import NOW


class TestGenerateDemoEvents:
    """Test synthetic event generation."""

    def test_volume_and_window(self):
        events = generate_demo_events(NOW, days=3, rng=random.Random(1))

        assert 90 <= len(events) <= 237
        assert all(NOW - timedelta(days=3) < e.timestamp <= NOW for e in events)

    def test_failures_cost_nothing(self):
        events = generate_demo_events(NOW, days=5, rng=random.Random(2))
        rates = {rule.provider: rule.cost_per_unit for rule in DEMO_PRICING}

        for event in events:
            if event.status == CallStatus.SUCCESS:
                assert event.calculated_cost == rates[event.provider]
            else:
                assert event.calculated_cost == 0.0

    def test_seed_is_repeatable(self):
        first = generate_demo_events(NOW, days=2, rng=random.Random(42))
        second = generate_demo_events(NOW, days=2, rng=random.Random(42))

        assert first == second


class TestSeedDemoData:
    """Test seeding into a database."""

    def test_seeds_rules_budgets_and_events(self, db_path, pricing, budgets, events):
        summary = seed_demo_data(db_path, now=NOW, days=2, seed=3)

        assert summary.pricing_rules == 5
        assert summary.budgets == 3
        assert summary.events == events.count(EventQuery())
        assert {r.provider for r in pricing.list_all()} == {r.provider for r in DEMO_PRICING}

        twilio = budgets.get("Twilio", "2024-03")
        expected = events.sum_cost(EventQuery(provider="Twilio"))
        assert twilio.current_spend == pytest.approx(expected)

    def test_reseeding_skips_existing_budgets(self, db_path, budgets):
        seed_demo_data(db_path, now=NOW, days=1, seed=3)
        summary = seed_demo_data(db_path, now=NOW, days=1, seed=3)

        assert summary.budgets == 0
        assert len(budgets.list_all()) == 3
