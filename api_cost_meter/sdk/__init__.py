"""
SDK for API Cost Meter.

Wraps outbound API calls so each one is costed and logged.
"""

from .openai_client import TrackedOpenAI
from .tracker import ApiCallTracker, TrackedResult

__all__ = ["ApiCallTracker", "TrackedOpenAI", "TrackedResult"]
