"""
Cost optimization suggestions.

Scans a trailing window of events for five usage patterns and turns each
match into a Suggestion. Suggestions are computed on demand and never
persisted. Each pattern detector is isolated: a failing detector
contributes nothing instead of failing the whole run.
"""

from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from ..storage.models import CallStatus
from ..storage.query import Aggregation, EventQuery, GroupField, OrderBy, TimeBucket
from ..storage.repository import EventRepository

logger = structlog.get_logger()

DEFAULT_WINDOW_DAYS = 7

CACHE_MIN_CALLS = 100
CACHE_REDUCTION = 0.7
CACHE_TOP_N = 5

BURST_FACTOR = 5

BATCH_MIN_PER_MINUTE = 10
BATCH_MIN_OCCURRENCES = 5
BATCH_MAX_SIZE = 100
BATCH_REDUCTION_PERCENT = 90

DUPLICATE_MIN_COUNT = 3
DUPLICATE_TOP_N = 3

SLOW_RESPONSE_MS = 2000
SLOW_MIN_CALLS = 10


class SuggestionType(Enum):
    CACHING = "caching"
    RATE_LIMITING = "rate-limiting"
    BATCHING = "batching"
    DUPLICATE_REMOVAL = "duplicate-removal"
    PERFORMANCE = "performance"


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Suggestion:
    """One optimization opportunity with pattern-specific impact figures."""
    type: SuggestionType
    priority: Priority
    provider: str
    title: str
    description: str
    recommendation: str
    impact: Dict[str, Any] = field(default_factory=dict)
    feature: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class SuggestionReport:
    suggestions: List[Suggestion]

    @property
    def count(self) -> int:
        return len(self.suggestions)

    @property
    def grouped(self) -> Dict[str, List[Suggestion]]:
        """Suggestions keyed by priority, every priority present."""
        groups: Dict[str, List[Suggestion]] = {p.value: [] for p in Priority}
        for suggestion in self.suggestions:
            groups[suggestion.priority.value].append(suggestion)
        return groups


class OptimizationEngine:
    """Generates suggestions from usage patterns in the event store."""

    def __init__(
        self,
        events: EventRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.events = events
        self.clock = clock

    def generate_suggestions(
        self,
        days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Suggestion]:
        """Run every detector over the trailing days and concatenate results."""
        now = now or self.clock()
        query = EventQuery(start=now - timedelta(days=days), end=now)

        detectors: List[Tuple[str, Callable[[EventQuery], List[Suggestion]]]] = [
            ("caching", self.detect_cacheable_requests),
            ("rate_limiting", self.detect_rate_limit_opportunities),
            ("batching", self.detect_batch_opportunities),
            ("duplicates", self.detect_duplicate_calls),
            ("performance", self.detect_performance_issues),
        ]

        suggestions: List[Suggestion] = []
        for name, detector in detectors:
            try:
                suggestions.extend(detector(query))
            except Exception:
                logger.exception("suggestion_detector_failed", detector=name)

        logger.info("suggestions_generated", days=days, count=len(suggestions))
        return suggestions

    def get_optimization_suggestions(
        self,
        days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> SuggestionReport:
        return SuggestionReport(self.generate_suggestions(days, now))

    def suggestions_by_type(
        self,
        suggestion_type: SuggestionType,
        days: int = DEFAULT_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> List[Suggestion]:
        return [s for s in self.generate_suggestions(days, now) if s.type == suggestion_type]

    def detect_cacheable_requests(self, query: EventQuery) -> List[Suggestion]:
        """Frequently repeated successful calls that a cache could absorb."""
        rows = self.events.aggregate(
            _successful(query),
            Aggregation(
                group_by=(GroupField.PROVIDER, GroupField.ENDPOINT, GroupField.FEATURE),
                order_by=OrderBy.REQUESTS_DESC,
            ),
        )
        repeated = [row for row in rows if row.total_requests >= CACHE_MIN_CALLS][:CACHE_TOP_N]

        suggestions = []
        for row in repeated:
            provider, endpoint, feature = row.key
            reduction_percent = int(CACHE_REDUCTION * 100)
            suggestions.append(Suggestion(
                type=SuggestionType.CACHING,
                priority=Priority.HIGH,
                provider=provider,
                feature=feature,
                endpoint=endpoint,
                title="Implement Caching Strategy",
                description=(
                    f"{provider} - {endpoint} is called {row.total_requests} times. "
                    f"Cache responses to reduce API calls by {reduction_percent}%."
                ),
                impact={
                    "current_calls": row.total_requests,
                    "estimated_reduction": int(row.total_requests * CACHE_REDUCTION),
                    "potential_savings": round(row.total_cost * CACHE_REDUCTION, 6),
                },
                recommendation="Add caching layer with TTL based on data freshness requirements",
            ))
        return suggestions

    def detect_rate_limit_opportunities(self, query: EventQuery) -> List[Suggestion]:
        """Features whose busiest hour far exceeds their average hour."""
        rows = self.events.aggregate(
            query,
            Aggregation(
                group_by=(GroupField.PROVIDER, GroupField.FEATURE),
                bucket=TimeBucket.HOUR,
                order_by=OrderBy.BUCKET_ASC,
            ),
        )
        hourly: Dict[Tuple[str, str], List[int]] = defaultdict(list)
        for row in rows:
            hourly[row.key].append(row.total_requests)

        bursty = []
        for (provider, feature), counts in hourly.items():
            avg_hourly = sum(counts) / len(counts)
            max_hourly = max(counts)
            if max_hourly > BURST_FACTOR * avg_hourly:
                bursty.append((max_hourly / avg_hourly, provider, feature, avg_hourly, max_hourly))
        bursty.sort(key=lambda item: (-item[0], item[1], item[2]))

        return [
            Suggestion(
                type=SuggestionType.RATE_LIMITING,
                priority=Priority.MEDIUM,
                provider=provider,
                feature=feature,
                title="Implement Rate Limiting",
                description=(
                    f"{feature} shows bursty API usage patterns. "
                    f"Peak usage is {ratio:.1f}x the average."
                ),
                impact={
                    "avg_hourly": int(avg_hourly),
                    "max_hourly": max_hourly,
                    "ratio": round(ratio, 2),
                },
                recommendation="Implement request throttling and queue mechanism to smooth out API calls",
            )
            for ratio, provider, feature, avg_hourly, max_hourly in bursty
        ]

    def detect_batch_opportunities(self, query: EventQuery) -> List[Suggestion]:
        """Features that repeatedly fire many calls within a single minute."""
        rows = self.events.aggregate(
            query,
            Aggregation(
                group_by=(GroupField.PROVIDER, GroupField.FEATURE),
                bucket=TimeBucket.MINUTE,
                order_by=OrderBy.BUCKET_ASC,
            ),
        )
        rapid_minutes: Dict[Tuple[str, str], List[int]] = defaultdict(list)
        for row in rows:
            if row.total_requests >= BATCH_MIN_PER_MINUTE:
                rapid_minutes[row.key].append(row.total_requests)

        suggestions = []
        for (provider, feature), counts in sorted(rapid_minutes.items()):
            if len(counts) < BATCH_MIN_OCCURRENCES:
                continue
            avg_per_minute = sum(counts) / len(counts)
            suggestions.append(Suggestion(
                type=SuggestionType.BATCHING,
                priority=Priority.HIGH,
                provider=provider,
                feature=feature,
                title="Use Batch API Requests",
                description=(
                    f"{feature} makes {int(avg_per_minute)} requests per minute. "
                    "Use batch API endpoints if available."
                ),
                impact={
                    "avg_calls_per_minute": int(avg_per_minute),
                    "rapid_fire_minutes": len(counts),
                    "estimated_batch_size": min(int(avg_per_minute), BATCH_MAX_SIZE),
                    "potential_reduction_percent": BATCH_REDUCTION_PERCENT,
                },
                recommendation="Aggregate multiple requests into batch API calls to reduce overhead and cost",
            ))
        return suggestions

    def detect_duplicate_calls(self, query: EventQuery) -> List[Suggestion]:
        """Identical successful request payloads sent several times."""
        rows = self.events.aggregate(
            _successful(query),
            Aggregation(
                group_by=(
                    GroupField.PROVIDER,
                    GroupField.ENDPOINT,
                    GroupField.FEATURE,
                    GroupField.REQUEST_BODY,
                ),
                order_by=OrderBy.RECORDS_DESC,
            ),
        )
        duplicates = [row for row in rows if row.record_count >= DUPLICATE_MIN_COUNT][:DUPLICATE_TOP_N]

        suggestions = []
        for row in duplicates:
            provider, endpoint, feature, request_body = row.key
            # without a captured body the calls cannot be proven identical
            if request_body is None:
                continue
            suggestions.append(Suggestion(
                type=SuggestionType.DUPLICATE_REMOVAL,
                priority=Priority.MEDIUM,
                provider=provider,
                feature=feature,
                endpoint=endpoint,
                title="Remove Duplicate API Calls",
                description=(
                    f"Identical requests detected {row.record_count} times for {endpoint}. "
                    "Implement request deduplication."
                ),
                impact={
                    "duplicate_count": row.record_count,
                    "wasted_cost": round(row.total_cost, 6),
                },
                recommendation="Add request deduplication logic or short-term caching (5-10 seconds)",
            ))
        return suggestions

    def detect_performance_issues(self, query: EventQuery) -> List[Suggestion]:
        """Endpoints whose successful calls are slow on average."""
        rows = self.events.aggregate(
            _successful(query),
            Aggregation(
                group_by=(GroupField.PROVIDER, GroupField.ENDPOINT),
                order_by=OrderBy.AVG_RESPONSE_DESC,
            ),
        )

        suggestions = []
        for row in rows:
            if row.avg_response_time < SLOW_RESPONSE_MS or row.total_requests < SLOW_MIN_CALLS:
                continue
            provider, endpoint = row.key
            seconds = row.avg_response_time / 1000
            suggestions.append(Suggestion(
                type=SuggestionType.PERFORMANCE,
                priority=Priority.MEDIUM,
                provider=provider,
                endpoint=endpoint,
                title="Optimize Slow API Calls",
                description=(
                    f"{endpoint} has average response time of {seconds:.2f}s. "
                    "Consider optimization."
                ),
                impact={
                    "avg_response_time_ms": round(row.avg_response_time, 1),
                    "call_count": row.total_requests,
                },
                recommendation=(
                    "Review request payload, use pagination, or implement async "
                    "processing for heavy operations"
                ),
            ))
        return suggestions


def _successful(query: EventQuery) -> EventQuery:
    return replace(query, status=CallStatus.SUCCESS)
