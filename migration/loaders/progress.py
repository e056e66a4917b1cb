"""
Import progress: completion percentage, throughput and estimated time left.
"""

import time
from typing import Any, Callable, Dict, Optional

from schemas.recipe import BatchImportResult


def format_duration(seconds: Optional[float]) -> str:
    """``1h 2m``, ``3m 4s`` or ``5s``; ``calculating`` when unknown."""
    if seconds is None:
        return "calculating"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ProgressTracker:
    """
    Running totals for one import, fed a batch at a time.

    Skipped (already imported) records count towards completion but not
    towards throughput. Rate and ETA come from wall time since the tracker
    was created; ``clock`` is injectable for tests.
    """

    def __init__(self, total_records: int = 0, clock: Callable[[], float] = time.monotonic):
        self.total_records = total_records
        self.processed_records = 0
        self.succeeded_records = 0
        self.failed_records = 0
        self.skipped_records = 0
        self._clock = clock
        self._started = clock()

    def record_batch(self, batch: BatchImportResult) -> None:
        self.processed_records += len(batch.results)
        self.succeeded_records += batch.success_count
        self.failed_records += batch.failure_count

    def record_skipped(self, count: int) -> None:
        self.skipped_records += count

    @property
    def elapsed(self) -> float:
        return max(self._clock() - self._started, 0.0)

    @property
    def completed_records(self) -> int:
        return self.processed_records + self.skipped_records

    @property
    def percentage(self) -> int:
        if self.total_records == 0:
            return 0
        return min(100, round(self.completed_records * 100 / self.total_records))

    @property
    def records_per_second(self) -> float:
        elapsed = self.elapsed
        if elapsed == 0:
            return 0.0
        return self.processed_records / elapsed

    @property
    def eta_seconds(self) -> Optional[float]:
        """Seconds left at the current rate; None until a record was sent."""
        if self.processed_records == 0:
            return None
        remaining = max(self.total_records - self.completed_records, 0)
        return remaining * self.elapsed / self.processed_records

    @property
    def success_rate(self) -> int:
        if self.processed_records == 0:
            return 0
        return round(self.succeeded_records * 100 / self.processed_records)

    def snapshot(self) -> Dict[str, Any]:
        eta = self.eta_seconds
        return {
            "completed": self.completed_records,
            "total": self.total_records,
            "percent": self.percentage,
            "recordsPerSecond": round(self.records_per_second, 2),
            "etaSeconds": round(eta, 1) if eta is not None else None,
        }

    def summary_line(self) -> str:
        return (
            f"{self.completed_records}/{self.total_records} ({self.percentage}%), "
            f"{self.records_per_second:.1f} records/s, ETA {format_duration(self.eta_seconds)}"
        )
