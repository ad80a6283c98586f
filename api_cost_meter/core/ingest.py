"""
Event ingestion.

Validates incoming API-call records, costs them at write time and appends
them to the event store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from ..errors import PricingRuleNotFound, ValidationFailure
from ..storage.models import ApiCallEvent, CallStatus
from ..storage.repository import EventRepository, PricingRepository
from .pricing import CostCalculator
from .token_counter import TokenUsage

logger = structlog.get_logger()

_RECORD_KEYS = {
    "provider", "endpoint", "feature", "method", "request_count",
    "input_tokens", "output_tokens", "response_time_ms", "status",
    "status_code", "request_body", "error_message", "owner_id", "timestamp",
}


@dataclass(frozen=True)
class ApiCallRecord:
    """An API call as reported by the tracked application, before costing."""
    provider: str
    endpoint: str
    feature: str
    response_time_ms: int = 0
    method: str = "POST"
    request_count: int = 1
    input_tokens: int = 0
    output_tokens: int = 0
    status: Union[CallStatus, str] = CallStatus.SUCCESS
    status_code: Optional[int] = None
    request_body: Optional[Any] = None
    error_message: Optional[str] = None
    owner_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApiCallRecord":
        """Build a record from a JSON-style mapping.

        Raises:
            ValidationFailure: On unknown keys or a malformed timestamp
        """
        if not isinstance(data, Mapping):
            raise ValidationFailure("Each record must be an object")
        unknown = set(data.keys()) - _RECORD_KEYS
        if unknown:
            raise ValidationFailure(f"Unknown record fields: {sorted(unknown)}")

        values: Dict[str, Any] = dict(data)
        timestamp = values.get("timestamp")
        if isinstance(timestamp, str):
            try:
                values["timestamp"] = datetime.fromisoformat(timestamp)
            except ValueError:
                raise ValidationFailure(f"Invalid timestamp: {timestamp!r}")
        elif timestamp is not None and not isinstance(timestamp, datetime):
            raise ValidationFailure(f"Invalid timestamp: {timestamp!r}")

        missing = [k for k in ("provider", "endpoint", "feature") if k not in values]
        if missing:
            raise ValidationFailure(f"Missing required fields: {', '.join(missing)}")
        return cls(**values)


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailure(f"{name} is required and cannot be empty")
    return value.strip()


def _require_count(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationFailure(f"{name} must be an integer >= {minimum}")
    return value


def _optional_text(name: str, value: Any) -> Optional[str]:
    if value is not None and not isinstance(value, str):
        raise ValidationFailure(f"{name} must be a string")
    return value


def _optional_status_code(value: Any) -> Optional[int]:
    if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
        raise ValidationFailure("status_code must be an integer")
    return value


def _naive_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive local time and compared as text
    if value is not None and value.tzinfo is not None:
        raise ValidationFailure(f"timestamp must not carry a UTC offset: {value.isoformat()}")
    return value


def _parse_status(value: Union[CallStatus, str]) -> CallStatus:
    if isinstance(value, CallStatus):
        return value
    try:
        return CallStatus(str(value).lower())
    except ValueError:
        valid = [s.value for s in CallStatus]
        raise ValidationFailure(f"status must be one of: {valid}")


@dataclass(frozen=True)
class BulkItemError:
    index: int
    reason: str


@dataclass
class BulkLogResult:
    """Outcome of a partial-failure tolerant bulk write."""
    events: List[ApiCallEvent] = field(default_factory=list)
    errors: List[BulkItemError] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.events)

    @property
    def failed_count(self) -> int:
        return len(self.errors)


class EventLogger:
    """Costs and persists API-call events."""

    def __init__(
        self,
        events: EventRepository,
        pricing: PricingRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.events = events
        self.pricing = pricing
        self.calculator = CostCalculator(events, pricing)
        self.clock = clock

    def build_event(self, record: ApiCallRecord, require_pricing: bool = False) -> ApiCallEvent:
        """Validate and cost a record without persisting it.

        Args:
            record: Incoming call record
            require_pricing: Raise instead of billing zero when the provider
                has no active pricing rule

        Raises:
            ValidationFailure: If the record is malformed
            PricingRuleNotFound: If require_pricing and no active rule exists
        """
        provider = _require_text("provider", record.provider)
        endpoint = _require_text("endpoint", record.endpoint)
        feature = _require_text("feature", record.feature)
        method = _require_text("method", record.method).upper()
        request_count = _require_count("request_count", record.request_count, 1)
        input_tokens = _require_count("input_tokens", record.input_tokens, 0)
        output_tokens = _require_count("output_tokens", record.output_tokens, 0)
        response_time_ms = _require_count("response_time_ms", record.response_time_ms, 0)
        status = _parse_status(record.status)
        status_code = _optional_status_code(record.status_code)
        error_message = _optional_text("error_message", record.error_message)
        owner_id = _optional_text("owner_id", record.owner_id)

        now = _naive_timestamp(record.timestamp) or self.clock()
        rule = self.pricing.get_active(provider)
        if rule is None:
            if require_pricing:
                raise PricingRuleNotFound(provider)
            logger.warning("pricing_rule_missing", provider=provider, feature=feature)
            cost = 0.0
        else:
            usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
            cost = self.calculator.cost_for_call(rule, request_count, usage, now)

        return ApiCallEvent(
            timestamp=now,
            provider=provider,
            endpoint=endpoint,
            feature=feature,
            method=method,
            request_count=request_count,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            response_time_ms=response_time_ms,
            status=status,
            status_code=status_code,
            calculated_cost=cost,
            request_body=record.request_body,
            error_message=error_message,
            owner_id=owner_id,
        )

    def log_record(self, record: ApiCallRecord) -> ApiCallEvent:
        """Cost and persist a single record."""
        event = self.events.insert(self.build_event(record))
        logger.debug(
            "event_logged",
            provider=event.provider,
            feature=event.feature,
            cost=event.calculated_cost,
        )
        return event

    def log_event(
        self,
        provider: str,
        endpoint: str,
        feature: str,
        response_time_ms: int = 0,
        method: str = "POST",
        request_count: int = 1,
        input_tokens: int = 0,
        output_tokens: int = 0,
        status: Union[CallStatus, str] = CallStatus.SUCCESS,
        error_message: Optional[str] = None,
        **extra: Any,
    ) -> ApiCallEvent:
        """Log one API call; a provider without pricing is billed zero."""
        return self.log_record(ApiCallRecord(
            provider=provider,
            endpoint=endpoint,
            feature=feature,
            response_time_ms=response_time_ms,
            method=method,
            request_count=request_count,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            status=status,
            error_message=error_message,
            **extra,
        ))

    def bulk_log_events(
        self,
        records: Sequence[Union[ApiCallRecord, Mapping[str, Any]]],
    ) -> BulkLogResult:
        """Log a batch; bad items are reported by index and skipped.

        Unlike log_event, an item whose provider has no active pricing
        rule is a failure here.

        Raises:
            ValidationFailure: If records is empty
        """
        if not records:
            raise ValidationFailure("records must be a non-empty list")

        result = BulkLogResult()
        for index, item in enumerate(records):
            try:
                record = item if isinstance(item, ApiCallRecord) else ApiCallRecord.from_dict(item)
                event = self.build_event(record, require_pricing=True)
                result.events.append(self.events.insert(event))
            except (ValidationFailure, PricingRuleNotFound, TypeError) as e:
                result.errors.append(BulkItemError(index=index, reason=str(e)))
            except Exception as e:
                logger.exception("bulk_item_failed", index=index)
                result.errors.append(BulkItemError(index=index, reason=str(e) or type(e).__name__))

        logger.info(
            "bulk_log_complete",
            processed=result.processed_count,
            failed=result.failed_count,
        )
        return result
