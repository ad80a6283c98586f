"""
Generic call tracker.

Wraps any callable that talks to an external API, times it and logs the
outcome as an ApiCallEvent without changing what the call returns or raises.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

from ..core.ingest import EventLogger
from ..storage.models import ApiCallEvent, CallStatus

T = TypeVar("T")


@dataclass(frozen=True)
class TrackedResult(Generic[T]):
    """Return value of the wrapped call plus the event logged for it."""
    data: T
    event: ApiCallEvent


def extract_tokens(result: Any) -> Tuple[int, int]:
    """Input and output token counts from an LLM-style response, else (0, 0).

    Accepts objects or dicts exposing usage.prompt_tokens and
    usage.completion_tokens.
    """
    usage = result.get("usage") if isinstance(result, dict) else getattr(result, "usage", None)
    if usage is None:
        return 0, 0
    if isinstance(usage, dict):
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)
    return (
        int(getattr(usage, "prompt_tokens", 0) or 0),
        int(getattr(usage, "completion_tokens", 0) or 0),
    )


def classify_error(error: BaseException) -> Tuple[CallStatus, Optional[int]]:
    """Failure when the error carries an HTTP response, error otherwise."""
    status_code = getattr(error, "status_code", None)
    response = getattr(error, "response", None)
    if status_code is None and response is not None:
        status_code = getattr(response, "status_code", None)
    if response is not None or status_code is not None:
        return CallStatus.FAILURE, status_code
    return CallStatus.ERROR, None


class ApiCallTracker:
    """Logs every call made through track().

    Failures to log are not swallowed: a tracked call whose event cannot be
    stored raises.
    """

    def __init__(self, event_logger: EventLogger, owner_id: Optional[str] = None):
        self.event_logger = event_logger
        self.owner_id = owner_id

    def track(
        self,
        provider: str,
        endpoint: str,
        feature: str,
        call: Callable[..., T],
        *args: Any,
        method: str = "POST",
        request_count: int = 1,
        request_body: Optional[Any] = None,
        **kwargs: Any,
    ) -> TrackedResult[T]:
        """Invoke call(*args, **kwargs) and log it.

        Raises:
            Exception: Whatever the wrapped call raised, after logging it
        """
        started = time.monotonic()
        try:
            result = call(*args, **kwargs)
        except Exception as e:
            status, status_code = classify_error(e)
            self.event_logger.log_event(
                provider=provider,
                endpoint=endpoint,
                feature=feature,
                response_time_ms=elapsed_ms(started),
                method=method,
                request_count=request_count,
                status=status,
                error_message=str(e) or type(e).__name__,
                status_code=status_code,
                request_body=request_body,
                owner_id=self.owner_id,
            )
            raise

        input_tokens, output_tokens = extract_tokens(result)
        event = self.event_logger.log_event(
            provider=provider,
            endpoint=endpoint,
            feature=feature,
            response_time_ms=elapsed_ms(started),
            method=method,
            request_count=request_count,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            status=CallStatus.SUCCESS,
            request_body=request_body,
            owner_id=self.owner_id,
        )
        return TrackedResult(data=result, event=event)


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
