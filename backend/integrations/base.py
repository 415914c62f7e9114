"""
Sync result types shared by the telemetry workers.

Every sync cycle reports through the same container so the scheduler,
Celery tasks and the backfill script can log and return it uniformly.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    """Result status of a sync cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some events skipped under the "skip" failure policy
    FAILED = "failed"


class SyncType(str, Enum):
    """Tag recorded on every api_sync_logs row."""

    EVENTS = "events"  # periodic, default window
    EVENTS_WINDOW = "events_window"  # on-demand backfill


@dataclass
class SyncResult:
    """Standardized return from every sync cycle."""

    status: SyncStatus
    sync_type: SyncType
    account_id: str
    records_processed: int = 0
    records_failed: int = 0
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def complete(self) -> "SyncResult":
        self.completed_at = _utcnow()
        return self

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or _utcnow()
        return round((end - self.started_at).total_seconds(), 3)

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "sync_type": self.sync_type.value,
            "account_id": self.account_id,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "errors": list(self.errors),
            "duration_seconds": self.duration_seconds,
            **self.metadata,
        }
