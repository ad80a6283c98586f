import os
import tempfile
from datetime import datetime

import pytest

from api_cost_meter.storage.models import ApiCallEvent, CallStatus
from api_cost_meter.storage.repository import (
    AlertRepository,
    BudgetRepository,
    EventRepository,
    PricingRepository,
    initialize_schema,
)

NOW = datetime(2024, 3, 15, 12, 0, 0)


@pytest.fixture()
def db_path():
    """
    fresh SQLite database per test.
    """
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture()
def events(db_path):
    return EventRepository(db_path)


@pytest.fixture()
def pricing(db_path):
    return PricingRepository(db_path)


@pytest.fixture()
def budgets(db_path):
    return BudgetRepository(db_path)


@pytest.fixture()
def alerts(db_path):
    return AlertRepository(db_path)


def make_event(
    timestamp=NOW,
    provider="Twilio",
    endpoint="/Messages",
    feature="OTP Login",
    request_count=1,
    status=CallStatus.SUCCESS,
    response_time_ms=100,
    calculated_cost=0.0,
    **kwargs,
):
    return ApiCallEvent(
        timestamp=timestamp,
        provider=provider,
        endpoint=endpoint,
        feature=feature,
        request_count=request_count,
        status=status,
        response_time_ms=response_time_ms,
        calculated_cost=calculated_cost,
        **kwargs,
    )
