"""
Budget management.

Creates, edits and deletes monthly budgets and refreshes their recorded
spend from the event store. The anomaly detector reads current_spend as
last recomputed here.
"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..errors import BudgetNotFound
from ..storage.models import Budget
from ..storage.query import EventQuery
from ..storage.repository import BudgetRepository, EventRepository
from .periods import current_period, month_start, validate_period

logger = structlog.get_logger()


class BudgetService:
    """Budget creation, editing and spend recomputation."""

    def __init__(
        self,
        budgets: BudgetRepository,
        events: EventRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.budgets = budgets
        self.events = events
        self.clock = clock

    def create_budget(
        self,
        provider: str,
        monthly_limit: float,
        alert_threshold: float = 80.0,
        period: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Budget:
        """Create a budget for provider, defaulting to the current month.

        Raises:
            ValueError: If the provider, limit, threshold or period is invalid
            DuplicateBudgetError: If the provider already has a budget for the period
        """
        if not provider or not provider.strip():
            raise ValueError("provider is required and cannot be empty")
        period = validate_period(period) if period else current_period(now or self.clock())

        budget = self.budgets.create(Budget(
            provider=provider.strip(),
            period=period,
            monthly_limit=monthly_limit,
            alert_threshold=alert_threshold,
        ))
        logger.info(
            "budget_created",
            provider=budget.provider,
            period=budget.period,
            monthly_limit=budget.monthly_limit,
        )
        return budget

    def list_budgets(self) -> List[Budget]:
        return self.budgets.list_all()

    def update_budget(
        self,
        budget_id: int,
        monthly_limit: Optional[float] = None,
        alert_threshold: Optional[float] = None,
        is_active: Optional[bool] = None,
    ) -> Budget:
        """Change the limit, threshold or active flag of a budget.

        Fields left as None keep their stored value. Provider, period and
        current spend cannot be changed here.

        Raises:
            BudgetNotFound: If no budget has budget_id
            ValueError: If the new limit or threshold is invalid
        """
        budget = self.budgets.get_by_id(budget_id)
        if budget is None:
            raise BudgetNotFound(budget_id)

        changes = {
            name: value
            for name, value in (
                ("monthly_limit", monthly_limit),
                ("alert_threshold", alert_threshold),
                ("is_active", is_active),
            )
            if value is not None
        }
        updated = replace(budget, **changes)
        if not self.budgets.update(updated):
            raise BudgetNotFound(budget_id)

        logger.info("budget_updated", budget_id=budget_id, **changes)
        return updated

    def delete_budget(self, budget_id: int) -> None:
        """Delete a budget.

        Raises:
            BudgetNotFound: If no budget has budget_id
        """
        if not self.budgets.delete(budget_id):
            raise BudgetNotFound(budget_id)
        logger.info("budget_deleted", budget_id=budget_id)

    def recompute_budget_spend(self, now: Optional[datetime] = None) -> int:
        """Set current_spend of every active budget in the current period.

        Spend is the summed cost of the provider's events since the start of
        the month containing now.

        Returns:
            Number of budgets updated
        """
        now = now or self.clock()
        since = month_start(now)
        updated = 0
        for budget in self.budgets.list_active(current_period(now)):
            spend = self.events.sum_cost(EventQuery(start=since, end=now, provider=budget.provider))
            self.budgets.update_spend(budget.id, round(spend, 6))
            updated += 1

        logger.info("budget_spend_recomputed", budgets=updated)
        return updated
