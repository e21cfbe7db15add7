from datetime import datetime, timedelta
from typing import Callable

from shared.errors import NotFound
from shared.helper.HelperConfig import HelperConfig
from shared.models.batch import BatchHistoryEntry, BatchKind, BatchProgress, BatchStatus
from shared.models.document import new_id, utc_now


class ProgressTracker:
    """Counters of one batch, updated by the engine after every settled item.

    processed and percentage never decrease. Status moves from processing to
    exactly one of completed, completed_with_errors, failed or cancelled.
    """

    def __init__(self, total: int, kind: BatchKind, batch_id: str | None = None, clock: Callable[[], datetime] = utc_now):
        self.batch_id = batch_id or new_id()
        self.kind = kind
        self.total = total
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self.status = BatchStatus.PROCESSING
        self._clock = clock
        self.started_at = clock()
        self.finished_at: datetime | None = None

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0 if self.is_finished() else 0.0
        return round(self.processed * 100.0 / self.total, 2)

    def is_finished(self) -> bool:
        return self.status != BatchStatus.PROCESSING

    def record(self, success: bool) -> None:
        if self.is_finished():
            return
        self.processed += 1
        if success:
            self.successful += 1
        else:
            self.failed += 1

    def finish(self, status: BatchStatus | None = None) -> None:
        """Close the tracker. Without an explicit status it is derived from the counters."""
        if self.is_finished():
            return
        if status is None:
            status = BatchStatus.COMPLETED if self.failed == 0 else BatchStatus.COMPLETED_WITH_ERRORS
        self.status = status
        self.finished_at = self._clock()

    def snapshot(self) -> BatchProgress:
        return BatchProgress(
            batch_id=self.batch_id,
            kind=self.kind,
            status=self.status,
            total=self.total,
            processed=self.processed,
            successful=self.successful,
            failed=self.failed,
            percentage=self.percentage,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )

    def history_entry(self) -> BatchHistoryEntry:
        return BatchHistoryEntry(
            batch_id=self.batch_id,
            kind=self.kind,
            status=self.status,
            total=self.total,
            successful=self.successful,
            failed=self.failed,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class ProgressRegistry:
    """Trackers by batch id.

    Finished trackers are dropped once they are older than the grace period.
    Purging happens whenever the registry is accessed; there are no timers.
    """

    def __init__(self, helper_config: HelperConfig, clock: Callable[[], datetime] = utc_now):
        self.logging = helper_config.get_logger()
        self.grace = timedelta(seconds=float(helper_config.get_number_val("BATCH_PROGRESS_GRACE_SECONDS", default=1800)))
        self._clock = clock
        self._trackers: dict[str, ProgressTracker] = {}

    def create(self, total: int, kind: BatchKind) -> ProgressTracker:
        self.purge()
        tracker = ProgressTracker(total=total, kind=kind, clock=self._clock)
        self._trackers[tracker.batch_id] = tracker
        return tracker

    def get(self, batch_id: str) -> ProgressTracker:
        """
        Raises:
            NotFound: If the batch is unknown or its progress was already cleared.
        """
        self.purge()
        tracker = self._trackers.get(batch_id)
        if tracker is None:
            raise NotFound(f"Batch {batch_id} not found.")
        return tracker

    def snapshot(self, batch_id: str) -> BatchProgress:
        return self.get(batch_id).snapshot()

    def list_active(self) -> list[BatchProgress]:
        self.purge()
        return [t.snapshot() for t in self._trackers.values() if not t.is_finished()]

    def purge(self) -> int:
        now = self._clock()
        expired = [
            batch_id for batch_id, tracker in self._trackers.items()
            if tracker.finished_at is not None and now - tracker.finished_at >= self.grace
        ]
        for batch_id in expired:
            del self._trackers[batch_id]
        if expired:
            self.logging.debug("Cleared progress of %d finished batches", len(expired))
        return len(expired)
