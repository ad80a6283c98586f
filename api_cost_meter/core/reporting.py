"""
Aggregated cost and usage views for dashboards.

All functions here are read-only. Store failures are logged and degrade to
empty or zero results so the dashboard stays available.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from math import ceil
from typing import Dict, List, Optional

import structlog

from ..storage.models import ApiCallEvent, CallStatus
from ..storage.query import AggregateRow, Aggregation, EventQuery, GroupField, OrderBy, TimeBucket
from ..storage.repository import EventRepository

logger = structlog.get_logger()


class TrendPeriod(Enum):
    """Granularity accepted by the cost-trend view.

    Weekly buckets start on Monday and are labelled "YYYY-Www" from SQLite
    %W, so days before the first Monday of a year fall in week 00.
    """
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def bucket(self) -> TimeBucket:
        return {
            TrendPeriod.HOURLY: TimeBucket.HOUR,
            TrendPeriod.DAILY: TimeBucket.DAY,
            TrendPeriod.WEEKLY: TimeBucket.WEEK,
        }[self]


@dataclass(frozen=True)
class Totals:
    total_cost: float = 0.0
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    avg_response_time: float = 0.0


@dataclass(frozen=True)
class ProviderCost:
    provider: str
    total_cost: float
    total_requests: int
    success_count: int
    failure_count: int


@dataclass(frozen=True)
class FeatureCost:
    feature: str
    provider: str
    total_cost: float
    total_requests: int


@dataclass(frozen=True)
class TrendPoint:
    bucket: str
    total_cost: float
    total_requests: int
    avg_response_time: float = 0.0


@dataclass(frozen=True)
class Dashboard:
    totals: Totals
    cost_by_provider: List[ProviderCost] = field(default_factory=list)
    cost_by_feature: List[FeatureCost] = field(default_factory=list)
    daily_trends: List[TrendPoint] = field(default_factory=list)
    top_expensive: List[ProviderCost] = field(default_factory=list)


@dataclass(frozen=True)
class LogPage:
    events: List[ApiCallEvent]
    total: int
    page: int
    pages: int


class Reporter:
    """Builds dashboard views over a time window."""

    def __init__(self, events: EventRepository):
        self.events = events

    def _aggregate(self, query: EventQuery, aggregation: Aggregation) -> List[AggregateRow]:
        return self.events.aggregate(query, aggregation)

    def get_totals(self, query: EventQuery) -> Totals:
        """Totals over the window; the response-time mean is per record."""
        try:
            rows = self._aggregate(query, Aggregation())
        except Exception:
            logger.exception("totals_query_failed")
            return Totals()
        if not rows or rows[0].record_count == 0:
            return Totals()
        row = rows[0]
        return Totals(
            total_cost=row.total_cost,
            total_requests=row.total_requests,
            success_count=row.success_requests,
            failure_count=row.failed_requests,
            avg_response_time=row.avg_response_time,
        )

    def get_cost_by_provider(self, query: EventQuery) -> List[ProviderCost]:
        """Cost per provider, most expensive first."""
        try:
            rows = self._aggregate(query, Aggregation(group_by=(GroupField.PROVIDER,)))
        except Exception:
            logger.exception("cost_by_provider_query_failed")
            return []
        return [
            ProviderCost(
                provider=row.key[0],
                total_cost=row.total_cost,
                total_requests=row.total_requests,
                success_count=row.success_requests,
                failure_count=row.failed_requests,
            )
            for row in rows
        ]

    def get_cost_by_feature(self, query: EventQuery) -> List[FeatureCost]:
        """Cost per (feature, provider) pair, most expensive first."""
        try:
            rows = self._aggregate(
                query,
                Aggregation(group_by=(GroupField.FEATURE, GroupField.PROVIDER)),
            )
        except Exception:
            logger.exception("cost_by_feature_query_failed")
            return []
        return [
            FeatureCost(
                feature=row.key[0],
                provider=row.key[1],
                total_cost=row.total_cost,
                total_requests=row.total_requests,
            )
            for row in rows
        ]

    def get_trend(self, query: EventQuery, bucket: TimeBucket) -> List[TrendPoint]:
        """Chronological totals per calendar bucket; empty buckets are omitted."""
        try:
            rows = self._aggregate(
                query,
                Aggregation(bucket=bucket, order_by=OrderBy.BUCKET_ASC),
            )
        except Exception:
            logger.exception("trend_query_failed", bucket=bucket.name)
            return []
        return [
            TrendPoint(
                bucket=row.bucket,
                total_cost=row.total_cost,
                total_requests=row.total_requests,
                avg_response_time=row.avg_response_time,
            )
            for row in rows
        ]

    def get_daily_cost_trend(self, query: EventQuery) -> List[TrendPoint]:
        return self.get_trend(query, TimeBucket.DAY)

    def get_dashboard(
        self,
        start: datetime,
        end: datetime,
        provider: Optional[str] = None,
        feature: Optional[str] = None,
    ) -> Dashboard:
        """Dashboard for [start, end], optionally narrowed to a provider/feature."""
        query = EventQuery(start=start, end=end, provider=provider, feature=feature)
        cost_by_provider = self.get_cost_by_provider(query)
        return Dashboard(
            totals=self.get_totals(query),
            cost_by_provider=cost_by_provider,
            cost_by_feature=self.get_cost_by_feature(query),
            daily_trends=self.get_daily_cost_trend(query),
            top_expensive=cost_by_provider[:5],
        )

    def get_cost_trends(
        self,
        period: TrendPeriod = TrendPeriod.DAILY,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> List[TrendPoint]:
        """Cost trend over the trailing days at the given granularity."""
        now = now or datetime.now()
        query = EventQuery(start=now - timedelta(days=days), end=now)
        return self.get_trend(query, period.bucket)

    def get_logs(
        self,
        page: int = 1,
        limit: int = 50,
        provider: Optional[str] = None,
        feature: Optional[str] = None,
        status: Optional[CallStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> LogPage:
        """Paginated event log, newest first."""
        page = max(1, page)
        limit = max(1, limit)
        query = EventQuery(start=start, end=end, provider=provider, feature=feature, status=status)
        try:
            total = self.events.count(query)
            events = self.events.fetch(query, limit=limit, offset=(page - 1) * limit)
        except Exception:
            logger.exception("logs_query_failed")
            return LogPage(events=[], total=0, page=page, pages=0)
        return LogPage(events=events, total=total, page=page, pages=ceil(total / limit))

    def list_providers(self) -> List[str]:
        try:
            return self.events.distinct(GroupField.PROVIDER)
        except Exception:
            logger.exception("providers_query_failed")
            return []

    def list_features(self) -> List[str]:
        try:
            return self.events.distinct(GroupField.FEATURE)
        except Exception:
            logger.exception("features_query_failed")
            return []


def dashboard_to_dict(dashboard: Dashboard) -> Dict[str, object]:
    """Plain-dict rendering for JSON output."""
    return asdict(dashboard)
