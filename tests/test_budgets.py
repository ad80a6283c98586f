"""
Unit tests for budget creation and spend recomputation.
"""

from datetime import datetime, timedelta

import pytest

from api_cost_meter.core.budgets import BudgetService
from api_cost_meter.errors import BudgetNotFound, DuplicateBudgetError
from api_cost_meter.storage.models import Budget

from conftest import NOW, make_event


@pytest.fixture()
def service(budgets, events):
    return BudgetService(budgets, events, clock=lambda: NOW)


class TestCreateBudget:
    """Test budget creation."""

    def test_defaults_to_current_period(self, service):
        budget = service.create_budget("Twilio", 500)

        assert budget.id is not None
        assert budget.period == "2024-03"
        assert budget.alert_threshold == 80.0
        assert budget.current_spend == 0.0

    def test_explicit_period(self, service):
        budget = service.create_budget("Twilio", 500, alert_threshold=75, period="2024-04")

        assert budget.period == "2024-04"
        assert budget.alert_threshold == 75

    def test_duplicate_rejected(self, service):
        service.create_budget("Twilio", 500)

        with pytest.raises(DuplicateBudgetError, match="Twilio"):
            service.create_budget("Twilio", 900)

    def test_same_provider_other_period_allowed(self, service):
        service.create_budget("Twilio", 500)
        service.create_budget("Twilio", 500, period="2024-04")

        assert len(service.list_budgets()) == 2

    @pytest.mark.parametrize("period", ["2024-3", "March", "2024-13", "2024/03"])
    def test_malformed_period_rejected(self, service, period):
        with pytest.raises(ValueError, match="YYYY-MM"):
            service.create_budget("Twilio", 500, period=period)

    def test_negative_limit_rejected(self, service):
        with pytest.raises(ValueError, match="negative"):
            service.create_budget("Twilio", -1)

    def test_threshold_out_of_range_rejected(self, service):
        with pytest.raises(ValueError, match="alert_threshold"):
            service.create_budget("Twilio", 500, alert_threshold=120)

    def test_empty_provider_rejected(self, service):
        with pytest.raises(ValueError, match="provider"):
            service.create_budget("  ", 500)


class TestRecomputeSpend:
    """Test spend recomputation from the event store."""

    def test_sums_month_to_date_cost(self, service, budgets, events):
        service.create_budget("Twilio", 500)
        events.insert_many([
            make_event(timestamp=datetime(2024, 2, 29, 23, 0), calculated_cost=100.0),
            make_event(timestamp=datetime(2024, 3, 1, 0, 0), calculated_cost=1.25),
            make_event(timestamp=NOW - timedelta(hours=1), calculated_cost=2.5),
            make_event(timestamp=NOW - timedelta(hours=1), provider="OpenAI", calculated_cost=9.0),
        ])

        updated = service.recompute_budget_spend()

        assert updated == 1
        assert budgets.get("Twilio", "2024-03").current_spend == pytest.approx(3.75)

    def test_other_periods_untouched(self, service, budgets, events):
        budgets.create(Budget(provider="Twilio", period="2024-02", monthly_limit=100, current_spend=42))
        events.insert(make_event(calculated_cost=5.0))

        assert service.recompute_budget_spend() == 0
        assert budgets.get("Twilio", "2024-02").current_spend == 42

    def test_inactive_budget_skipped(self, service, budgets, events):
        budgets.create(Budget(
            provider="Twilio", period="2024-03", monthly_limit=100, is_active=False,
        ))
        events.insert(make_event(calculated_cost=5.0))

        assert service.recompute_budget_spend() == 0
        assert budgets.get("Twilio", "2024-03").current_spend == 0.0

    def test_recompute_is_idempotent(self, service, budgets, events):
        service.create_budget("Twilio", 500)
        events.insert(make_event(calculated_cost=5.0))

        service.recompute_budget_spend()
        service.recompute_budget_spend()

        assert budgets.get("Twilio", "2024-03").current_spend == 5.0


class TestUpdateBudget:
    """Test editing and deleting budgets."""

    def test_update_changes_only_given_fields(self, service, budgets):
        created = service.create_budget("Twilio", 500, alert_threshold=75)

        updated = service.update_budget(created.id, monthly_limit=250)

        assert updated.monthly_limit == 250
        assert updated.alert_threshold == 75
        assert updated.is_active
        assert budgets.get("Twilio", "2024-03") == updated

    def test_deactivated_budget_skipped_by_recompute(self, service, budgets, events):
        created = service.create_budget("Twilio", 500)
        events.insert(make_event(calculated_cost=5.0))

        service.update_budget(created.id, is_active=False)

        assert service.recompute_budget_spend() == 0
        assert budgets.list_active("2024-03") == []

    def test_update_revalidates(self, service, budgets):
        created = service.create_budget("Twilio", 500)

        with pytest.raises(ValueError, match="alert_threshold"):
            service.update_budget(created.id, alert_threshold=150)
        with pytest.raises(ValueError, match="negative"):
            service.update_budget(created.id, monthly_limit=-5)

        assert budgets.get("Twilio", "2024-03") == created

    def test_update_keeps_current_spend(self, service, budgets, events):
        created = service.create_budget("Twilio", 500)
        events.insert(make_event(calculated_cost=5.0))
        service.recompute_budget_spend()

        updated = service.update_budget(created.id, alert_threshold=90)

        assert updated.current_spend == 5.0
        assert budgets.get("Twilio", "2024-03").current_spend == 5.0

    def test_delete(self, service, budgets):
        created = service.create_budget("Twilio", 500)

        service.delete_budget(created.id)

        assert budgets.list_all() == []

    @pytest.mark.parametrize("action", [
        lambda s: s.update_budget(999, monthly_limit=10),
        lambda s: s.delete_budget(999),
    ])
    def test_unknown_budget_raises(self, service, action):
        with pytest.raises(BudgetNotFound, match="999"):
            action(service)
