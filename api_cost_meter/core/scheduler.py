"""
Periodic anomaly checks.

Runs the anomaly detector on a fixed interval inside an asyncio loop.
"""

import asyncio
from typing import Optional

import structlog

from .anomaly import AnomalyCheckResult, AnomalyDetector

logger = structlog.get_logger()

DEFAULT_CHECK_INTERVAL_MS = 300000


class AnomalyScheduler:
    """Runs all anomaly checks every interval until stop() is called.

    The detector is synchronous, so each run happens in a worker thread.
    A failing run is logged and the loop continues with the next interval.
    """

    def __init__(
        self,
        detector: AnomalyDetector,
        interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._detector = detector
        self._interval = interval_ms / 1000
        self._stop_event = asyncio.Event()
        self.runs = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def stop(self) -> None:
        """Signal the loop to stop; an in-flight run completes first."""
        self._stop_event.set()

    async def run_once(self) -> Optional[AnomalyCheckResult]:
        """Run all checks once in a worker thread.

        Returns:
            The check result, or None if the run failed
        """
        try:
            result = await asyncio.to_thread(self._detector.run_all_checks)
        except Exception:
            logger.exception("scheduled_check_failed")
            return None
        finally:
            self.runs += 1
        return result

    async def run(self, max_runs: Optional[int] = None) -> None:
        """Run checks immediately and then every interval.

        Args:
            max_runs: Stop after this many runs; None runs until stop()
        """
        logger.info("anomaly_scheduler_started", interval_seconds=self._interval)
        while not self._stop_event.is_set():
            await self.run_once()
            if max_runs is not None and self.runs >= max_runs:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("anomaly_scheduler_stopped", runs=self.runs)
