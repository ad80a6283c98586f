"""
Typed query builder for the event store.

Filters, grouping dimensions and time buckets are closed sets so every
aggregation the analytics layer issues has a known shape.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from .db import to_db_timestamp
from .models import CallStatus


class TimeBucket(Enum):
    """Calendar bucket granularity, as a SQLite strftime format."""
    MINUTE = "%Y-%m-%d %H:%M"
    HOUR = "%Y-%m-%d %H:00"
    DAY = "%Y-%m-%d"
    # Monday-based week of year
    WEEK = "%Y-W%W"
    MONTH = "%Y-%m"

    def expression(self, column: str = "timestamp") -> str:
        return f"strftime('{self.value}', {column})"


class GroupField(Enum):
    """Event columns an aggregation can group by."""
    PROVIDER = "provider"
    ENDPOINT = "endpoint"
    FEATURE = "feature"
    REQUEST_BODY = "request_body"
    STATUS = "status"


class OrderBy(Enum):
    """Result ordering of an aggregation."""
    COST_DESC = "total_cost DESC"
    REQUESTS_DESC = "total_requests DESC"
    RECORDS_DESC = "record_count DESC"
    AVG_RESPONSE_DESC = "avg_response_time DESC"
    BUCKET_ASC = "bucket ASC"


@dataclass(frozen=True)
class EventQuery:
    """Filter over the event store.

    start and end are inclusive; before is an exclusive upper bound.
    """
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    before: Optional[datetime] = None
    provider: Optional[str] = None
    feature: Optional[str] = None
    status: Optional[CallStatus] = None

    def where_clause(self) -> Tuple[str, List[Any]]:
        """Build the WHERE clause and its parameters.

        Returns:
            Tuple of (" WHERE ..." or "", params)
        """
        conditions = []
        params: List[Any] = []

        if self.start is not None:
            conditions.append("timestamp >= ?")
            params.append(to_db_timestamp(self.start))
        if self.end is not None:
            conditions.append("timestamp <= ?")
            params.append(to_db_timestamp(self.end))
        if self.before is not None:
            conditions.append("timestamp < ?")
            params.append(to_db_timestamp(self.before))
        if self.provider:
            conditions.append("provider = ?")
            params.append(self.provider)
        if self.feature:
            conditions.append("feature = ?")
            params.append(self.feature)
        if self.status is not None:
            conditions.append("status = ?")
            params.append(self.status.value)

        if not conditions:
            return "", params
        return " WHERE " + " AND ".join(conditions), params


@dataclass(frozen=True)
class Aggregation:
    """Grouping request: dimensions, optional time bucket and ordering."""
    group_by: Sequence[GroupField] = ()
    bucket: Optional[TimeBucket] = None
    order_by: OrderBy = OrderBy.COST_DESC

    def build_sql(self, query: EventQuery) -> Tuple[str, List[Any]]:
        """Render the aggregation as a single SELECT over api_call_event."""
        key_columns = [field.value for field in self.group_by]
        select_keys = list(key_columns)
        group_keys = list(key_columns)
        if self.bucket is not None:
            select_keys.append(f"{self.bucket.expression()} AS bucket")
            group_keys.append("bucket")
        else:
            select_keys.append("NULL AS bucket")

        where, params = query.where_clause()
        sql = f"""
            SELECT {", ".join(select_keys)},
                   COALESCE(SUM(calculated_cost), 0) AS total_cost,
                   COALESCE(SUM(request_count), 0) AS total_requests,
                   COALESCE(SUM(CASE WHEN status = 'success' THEN request_count ELSE 0 END), 0),
                   COALESCE(SUM(CASE WHEN status != 'success' THEN request_count ELSE 0 END), 0),
                   COALESCE(AVG(response_time_ms), 0) AS avg_response_time,
                   COUNT(*) AS record_count
            FROM api_call_event{where}
        """
        if group_keys:
            sql += " GROUP BY " + ", ".join(group_keys)
        # key columns break ties so results are stable across calls
        order_terms = [self.order_by.value] + group_keys
        sql += " ORDER BY " + ", ".join(order_terms)
        return sql, params


@dataclass(frozen=True)
class AggregateRow:
    """One group produced by an aggregation."""
    key: Tuple[Any, ...]
    bucket: Optional[str]
    total_cost: float
    total_requests: int
    success_requests: int
    failed_requests: int
    avg_response_time: float
    record_count: int
