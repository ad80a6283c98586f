# api_cost_meter/demo/seed_demo_data.py

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog

from api_cost_meter.core.budgets import BudgetService
from api_cost_meter.errors import DuplicateBudgetError
from api_cost_meter.storage.db import DEFAULT_DB_PATH
from api_cost_meter.storage.models import ApiCallEvent, CallStatus, PricingRule
from api_cost_meter.storage.repository import (
    BudgetRepository,
    EventRepository,
    PricingRepository,
    initialize_schema,
)

logger = structlog.get_logger()

DEMO_PRICING = [
    PricingRule(provider="Twilio", cost_per_unit=0.0075, free_tier_limit=1000,
                description="SMS and Voice API"),
    PricingRule(provider="OpenAI", cost_per_unit=0.002, free_tier_limit=0,
                description="GPT-3.5 API calls"),
    PricingRule(provider="Google Maps", cost_per_unit=0.005, free_tier_limit=2500,
                description="Maps Geocoding API"),
    PricingRule(provider="Stripe", cost_per_unit=0.0001, free_tier_limit=5000,
                description="Payment Processing API"),
    PricingRule(provider="SendGrid", cost_per_unit=0.001, free_tier_limit=10000,
                description="Email Delivery API"),
]

# (provider, monthly limit, alert threshold %)
DEMO_BUDGETS = [
    ("Twilio", 500.0, 80.0),
    ("OpenAI", 1000.0, 85.0),
    ("Google Maps", 300.0, 75.0),
]

DEMO_ENDPOINTS: Dict[str, List[str]] = {
    "Twilio": ["/Messages", "/Calls", "/Verify"],
    "OpenAI": ["/v1/chat/completions", "/v1/completions", "/v1/embeddings"],
    "Google Maps": ["/geocode", "/directions", "/places"],
    "Stripe": ["/charges", "/customers", "/payment_intents"],
    "SendGrid": ["/mail/send", "/templates", "/contacts"],
}

DEMO_FEATURES = [
    "OTP Login",
    "User Registration",
    "Password Reset",
    "Maps Search",
    "Location Finder",
    "AI Chatbot",
    "Content Generation",
    "Payment Processing",
    "Email Notification",
]


@dataclass(frozen=True)
class SeedSummary:
    pricing_rules: int
    budgets: int
    events: int


def generate_demo_events(
    now: datetime,
    days: int = 30,
    rng: Optional[random.Random] = None,
) -> List[ApiCallEvent]:
    """Synthetic traffic: 30-79 calls a day, roughly 10% failing.

    Successful calls are costed at the provider's flat rate; failures cost 0.
    """
    rng = rng or random.Random()
    rates = {rule.provider: rule.cost_per_unit for rule in DEMO_PRICING}
    providers = list(DEMO_ENDPOINTS)

    events = []
    for day in range(days):
        for _ in range(rng.randint(30, 79)):
            provider = rng.choice(providers)
            status = CallStatus.SUCCESS if rng.random() > 0.1 else CallStatus.FAILURE
            timestamp = (now - timedelta(days=day)).replace(
                hour=rng.randrange(24), minute=rng.randrange(60), second=0, microsecond=0
            )
            # today's synthetic calls never land in the future
            if timestamp > now:
                timestamp = now
            events.append(ApiCallEvent(
                timestamp=timestamp,
                provider=provider,
                endpoint=rng.choice(DEMO_ENDPOINTS[provider]),
                feature=rng.choice(DEMO_FEATURES),
                request_count=1,
                response_time_ms=rng.randint(100, 2099),
                status=status,
                status_code=200 if status == CallStatus.SUCCESS else 400,
                calculated_cost=rates[provider] if status == CallStatus.SUCCESS else 0.0,
                owner_id=rng.choice(["admin", "developer"]),
            ))
    return events


def seed_demo_data(
    db_path: str = DEFAULT_DB_PATH,
    now: Optional[datetime] = None,
    days: int = 30,
    seed: Optional[int] = None,
) -> SeedSummary:
    """Seed demo pricing rules, budgets and event history into db_path."""
    now = now or datetime.now()
    initialize_schema(db_path)

    pricing = PricingRepository(db_path)
    for rule in DEMO_PRICING:
        pricing.upsert(rule)

    events = EventRepository(db_path)
    budget_service = BudgetService(BudgetRepository(db_path), events)
    created_budgets = 0
    for provider, limit, threshold in DEMO_BUDGETS:
        try:
            budget_service.create_budget(provider, limit, threshold, now=now)
            created_budgets += 1
        except DuplicateBudgetError:
            logger.info("demo_budget_exists", provider=provider)

    stored = events.insert_many(generate_demo_events(now, days, random.Random(seed)))
    budget_service.recompute_budget_spend(now)

    logger.info("demo_data_seeded", events=len(stored), budgets=created_budgets)
    return SeedSummary(
        pricing_rules=len(DEMO_PRICING),
        budgets=created_budgets,
        events=len(stored),
    )


if __name__ == "__main__":
    summary = seed_demo_data()
    print(f"Demo data inserted: {summary.events} events")
