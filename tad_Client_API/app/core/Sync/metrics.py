"""
Rolling performance statistics for sync attempts.
"""

from collections import deque
from typing import Deque

from loguru import logger

from .models import PerformanceMetrics


class SyncPerformanceMonitor:
    """
    Counts sync attempts and keeps a bounded rolling average of their durations.

    ``average_sync_time`` is the mean of the most recent ``window_size``
    durations, not of the full history.
    """

    def __init__(self, window_size: int = 10):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.window_size = window_size
        self._durations: Deque[float] = deque(maxlen=window_size)
        self._metrics = PerformanceMetrics()

    @property
    def metrics(self) -> PerformanceMetrics:
        return self._metrics

    def record_sync_result(self, success: bool, duration: float) -> PerformanceMetrics:
        """
        Record one sync outcome.

        Args:
            success: Whether the attempt succeeded
            duration: Attempt duration (the unit is the caller's; the scheduler reports milliseconds)
        """
        prev = self._metrics
        total = prev.total_syncs + 1
        failed = prev.failed_syncs + (0 if success else 1)
        self._durations.append(duration)

        self._metrics = PerformanceMetrics(
            total_syncs=total,
            failed_syncs=failed,
            success_rate=(total - failed) / total * 100,
            average_sync_time=sum(self._durations) / len(self._durations),
            last_sync_duration=duration,
        )
        logger.debug(f"Sync metrics updated: {self._metrics}")
        return self._metrics

    def reset_metrics(self) -> None:
        self._durations.clear()
        self._metrics = PerformanceMetrics()
