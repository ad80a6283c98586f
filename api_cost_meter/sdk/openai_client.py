"""
Tracked OpenAI client wrapper.

Records token usage events for cost tracking without modifying behavior.
"""

import time
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.ingest import EventLogger
from ..storage.models import CallStatus
from .tracker import classify_error, elapsed_ms

PROVIDER = "OpenAI"
ENDPOINT = "/v1/chat/completions"


class TrackedOpenAI:
    """OpenAI client wrapper that logs each chat completion.

    Successful calls are logged with the prompt and completion token
    counts, so a pricing rule with per-1k token rates bills them by token.
    Failed calls are logged and re-raised unchanged.
    """

    def __init__(self, model: str, feature: str, event_logger: EventLogger, **client_kwargs: Any):
        """Initialize tracked OpenAI client.

        Args:
            model: OpenAI model name (required)
            feature: Feature identifier for tracking (required)
            event_logger: Where events are costed and stored
            **client_kwargs: Passed through to openai.OpenAI

        Raises:
            ValueError: If model or feature is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")

        self.model = model
        self.feature = feature
        self.event_logger = event_logger
        self.client = OpenAI(**client_kwargs)

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion with usage recording.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response lacks usage
            OpenAI API errors: Propagated after the failure is logged
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request = {"model": self.model, "messages": messages}
        if temperature is not None:
            request["temperature"] = temperature
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        request.update(kwargs)

        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(**request)
        except Exception as e:
            status, status_code = classify_error(e)
            self.event_logger.log_event(
                provider=PROVIDER,
                endpoint=ENDPOINT,
                feature=self.feature,
                response_time_ms=elapsed_ms(started),
                status=status,
                status_code=status_code,
                error_message=str(e) or type(e).__name__,
            )
            raise

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        self.event_logger.log_event(
            provider=PROVIDER,
            endpoint=ENDPOINT,
            feature=self.feature,
            response_time_ms=elapsed_ms(started),
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            status=CallStatus.SUCCESS,
            status_code=200,
        )

        return response
