"""Simple in-memory metrics for webhook ingestion monitoring.

These metrics are process-local and reset on restart.
For persistent history, query the payment_events table.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Optional


@dataclass
class IngestionMetrics:
    """Thread-safe counters of admission outcomes."""

    _lock: Lock = field(default_factory=Lock)
    admitted: int = 0
    duplicates: int = 0
    _rejected: dict = field(default_factory=dict)  # reason -> count
    last_admitted_at: Optional[datetime] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record_admitted(self, received_at: Optional[datetime] = None) -> None:
        with self._lock:
            self.admitted += 1
            self.last_admitted_at = received_at or datetime.now(timezone.utc)

    def record_duplicate(self) -> None:
        with self._lock:
            self.duplicates += 1

    def record_rejected(self, reason: str) -> None:
        with self._lock:
            self._rejected[reason] = self._rejected.get(reason, 0) + 1

    def get_summary(self) -> dict:
        with self._lock:
            return {
                "admitted": self.admitted,
                "duplicates": self.duplicates,
                "rejected": dict(self._rejected),
                "rejected_total": sum(self._rejected.values()),
                "last_admitted_at": self.last_admitted_at.isoformat() if self.last_admitted_at else None,
                "since": self.started_at.isoformat(),
            }

    def reset(self) -> None:
        with self._lock:
            self.admitted = 0
            self.duplicates = 0
            self._rejected = {}
            self.last_admitted_at = None
            self.started_at = datetime.now(timezone.utc)


# Global metrics store
ingestion_metrics = IngestionMetrics()
