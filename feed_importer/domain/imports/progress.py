import logging
import threading
from collections import deque
from typing import Deque, Optional

from feed_importer.domain.imports.models import ImportProgress, ImportRun, ImportStatus, LogEntry
from feed_importer.utils.date import utcnow

logger = logging.getLogger(__name__)

_LEVEL_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
}


def compute_rates(processed: int, total: int, elapsed: float):
    """Return (percent, speed, eta_seconds); speed and ETA are 0 until work has been timed."""
    percent = int(processed * 100 / total) if total > 0 else 0
    if processed <= 0 or elapsed <= 0:
        return percent, 0.0, 0
    speed = processed / elapsed
    remaining = max(total - processed, 0)
    return percent, speed, int(remaining / speed)


class ProgressTracker:
    """
    Live progress of one run.

    Written by the run thread, read by any thread. Readers get deep copies so
    a snapshot never changes after it was taken.
    """

    def __init__(self, feed_id: str, log_size: int = 100):
        self._lock = threading.Lock()
        self._progress = ImportProgress(feed_id=feed_id)
        self._logs: Deque[LogEntry] = deque(maxlen=log_size)

    def start(self, run_id: str) -> None:
        with self._lock:
            self._progress.run_id = run_id
            self._progress.status = ImportStatus.RUNNING
            self._progress.message = "Starting import"

    def set_message(self, message: str, current_item: Optional[str] = None) -> None:
        with self._lock:
            self._progress.message = message
            if current_item is not None:
                self._progress.current_item = current_item

    def set_total(self, total: int) -> None:
        with self._lock:
            self._progress.total = total

    def refresh(self, run: ImportRun, elapsed: float, current_item: Optional[str] = None) -> None:
        """Copy the run counters and recompute percent, speed and ETA."""
        percent, speed, eta = compute_rates(run.processed, run.total_items, elapsed)
        with self._lock:
            progress = self._progress
            progress.total = run.total_items
            progress.processed = run.processed
            progress.created = run.created
            progress.updated = run.updated
            progress.skipped = run.skipped
            progress.errors = run.errors
            progress.percent = min(percent, 100)
            progress.elapsed_seconds = int(elapsed)
            progress.speed = round(speed, 2)
            progress.eta_seconds = eta
            if current_item is not None:
                progress.current_item = current_item

    def finish(self, status: ImportStatus, message: str) -> None:
        with self._lock:
            self._progress.status = status
            self._progress.message = message
            self._progress.eta_seconds = 0
            if status == ImportStatus.COMPLETED:
                self._progress.percent = 100

    def log(self, level: int, message: str) -> None:
        """Append to the rolling log and mirror the entry to the module logger."""
        logger.log(level, f"[{self._progress.feed_id}] {message}")
        entry = LogEntry(time=utcnow(), level=_LEVEL_NAMES.get(level, "info"), message=message)
        with self._lock:
            self._logs.append(entry)

    def snapshot(self) -> ImportProgress:
        with self._lock:
            copy = self._progress.model_copy(deep=True)
            copy.logs = [entry.model_copy() for entry in self._logs]
        return copy
