"""
Exception hierarchy shared by the storage and core layers.
"""


class ApiCostMeterError(Exception):
    """Base class for all errors raised by this package."""


class ValidationFailure(ApiCostMeterError, ValueError):
    """Raised when an event, tier table or record fails validation.

    Nothing is persisted when this is raised.
    """


class PricingRuleNotFound(ApiCostMeterError, LookupError):
    """Raised on paths that require an active pricing rule for a provider."""

    def __init__(self, provider: str):
        super().__init__(f"No active pricing rule found for {provider}")
        self.provider = provider


class DuplicateBudgetError(ApiCostMeterError):
    """Raised when a budget already exists for the provider and period."""

    def __init__(self, provider: str, period: str):
        super().__init__(f"Budget already exists for {provider} in period {period}")
        self.provider = provider
        self.period = period


class AlertNotFound(ApiCostMeterError, LookupError):
    def __init__(self, alert_id: int):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class BudgetNotFound(ApiCostMeterError, LookupError):
    def __init__(self, budget_id: int):
        super().__init__(f"Budget not found: {budget_id}")
        self.budget_id = budget_id
