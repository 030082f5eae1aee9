"""
Import run orchestration.

One ImportEngine drives one run of one feed:

    download -> count pass -> process pass -> completed | failed | cancelled

Per-item problems (mapping errors, invalid prices, storage failures) only
bump counters and the rolling log. Fetch and parse problems fail the run and
their message is stored on the history row. A stop request is honoured
between items and ends the run as cancelled.
"""
import logging
import time
import uuid
from typing import Optional

from feed_importer.core.config import Settings, settings as default_settings
from feed_importer.domain.imports.catalog_store import CatalogStore
from feed_importer.domain.imports.categories import CategoryResolver
from feed_importer.domain.imports.exceptions import FeedImportError, ImportCancelled, ItemError
from feed_importer.domain.imports.feed_parser import FeedParser
from feed_importer.domain.imports.fingerprinting import calculate_item_fingerprint, has_changed
from feed_importer.domain.imports.mapper import map_item
from feed_importer.domain.imports.models import (
    FeedConfig,
    FeedStatus,
    ImportMode,
    ImportProgress,
    ImportRun,
    ImportStatus,
    ProductRecord,
    RawRecord,
)
from feed_importer.domain.imports.progress import ProgressTracker
from feed_importer.utils.cancellation import CancellationToken
from feed_importer.utils.date import utcnow

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"
ERROR = "error"


class ImportEngine:
    def __init__(
        self,
        feed: FeedConfig,
        store: CatalogStore,
        run_id: Optional[str] = None,
        triggered_by: str = "manual",
        settings: Optional[Settings] = None,
        parser: Optional[FeedParser] = None,
    ):
        self.feed = feed
        self.store = store
        self.settings = settings or default_settings
        self.parser = parser or FeedParser.from_feed(feed, settings=self.settings)
        self.run_id = run_id or str(uuid.uuid4())
        self.triggered_by = triggered_by

        self.cancel_token = CancellationToken()
        self.progress = ProgressTracker(feed.id, log_size=self.settings.progress_log_size)
        self.categories = CategoryResolver(store)
        self.run_record: Optional[ImportRun] = None
        self._started_monotonic = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        if not self.cancel_token.cancelled:
            self.cancel_token.cancel()
            self.progress.log(logging.INFO, "Stop requested")

    def get_progress(self) -> ImportProgress:
        return self.progress.snapshot()

    def run(self) -> ImportRun:
        """Execute the run to a terminal state and return the final history record."""
        run = ImportRun(
            id=self.run_id,
            feed_id=self.feed.id,
            started_at=utcnow(),
            triggered_by=self.triggered_by,
        )
        self.run_record = run
        self._started_monotonic = time.monotonic()
        self.progress.start(run.id)
        self.progress.log(logging.INFO, f"Import of '{self.feed.name or self.feed.id}' started ({self.triggered_by})")

        try:
            self.store.save_import_run(run)
            self.store.update_feed_status(self.feed, FeedStatus.RUNNING)

            self.progress.set_message("Downloading feed")
            data = self.parser.download()
            self.progress.log(logging.INFO, f"Downloaded {len(data)} bytes")

            self.progress.set_message("Counting items")
            run.total_items = self.parser.count_items(data, cancel_token=self.cancel_token)
            self.progress.set_total(run.total_items)
            self.progress.log(logging.INFO, f"Found {run.total_items} items")

            self.progress.set_message("Importing items")
            self.parser.parse_full(data, self._handle_record, cancel_token=self.cancel_token)
        except ImportCancelled:
            self._finish_cancelled()
        except FeedImportError as e:
            self._finish_failed(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error during import of feed {self.feed.id}")
            self._finish_failed(str(e))
        else:
            self._finish_completed()

        return run

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    def _handle_record(self, raw: RawRecord) -> None:
        run = self.run_record
        run.processed += 1

        outcome = self._process_record(raw)
        if outcome == CREATED:
            run.created += 1
        elif outcome == UPDATED:
            run.updated += 1
        elif outcome == SKIPPED:
            run.skipped += 1
        else:
            run.errors += 1

        if run.processed % self.settings.progress_update_interval == 0:
            self._refresh_progress()
        if run.processed % self.settings.history_flush_interval == 0:
            self._flush_history()

    def _process_record(self, raw: RawRecord) -> str:
        feed = self.feed
        position = self.run_record.processed

        try:
            item = map_item(raw, feed.field_mappings, decimal_separator=feed.decimal_separator)
        except ItemError as e:
            self.progress.log(logging.WARNING, f"Item {position}: {e.message}")
            return ERROR
        except Exception as e:
            self.progress.log(logging.ERROR, f"Item {position}: mapping error: {e}")
            return ERROR

        if item is None:
            return SKIPPED

        if item.price <= 0:
            self.progress.log(logging.WARNING, f"Item {position} '{item.title}': invalid price")
            return ERROR

        if not feed.import_images:
            item.image_url = ""
            item.gallery_images = []
        if not item.category_path and feed.default_category:
            item.category_path = feed.default_category

        fingerprint = calculate_item_fingerprint(item)

        try:
            existing = self.store.find_product_by_key(feed.match_by, item.match_value(feed.match_by))
            if existing is not None:
                existing_id, stored_fingerprint = existing
                if not has_changed(fingerprint, stored_fingerprint):
                    return SKIPPED
                if feed.import_mode == ImportMode.CREATE_ONLY:
                    return SKIPPED
            else:
                existing_id = None
                if feed.import_mode == ImportMode.UPDATE_ONLY:
                    return SKIPPED

            category_id = self.categories.resolve(item.category_path)
            self.store.upsert_product(
                ProductRecord(
                    item=item,
                    feed_id=feed.id,
                    fingerprint=fingerprint,
                    category_id=category_id,
                    id=existing_id,
                )
            )
        except Exception as e:
            self.progress.log(logging.ERROR, f"Item {position} '{item.title}': storage error: {e}")
            return ERROR

        return UPDATED if existing_id else CREATED

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _elapsed(self) -> float:
        return time.monotonic() - self._started_monotonic

    def _refresh_progress(self) -> None:
        self.progress.refresh(self.run_record, self._elapsed())

    def _flush_history(self) -> None:
        try:
            self.store.save_import_run(self.run_record)
        except Exception as e:
            logger.warning(f"Could not persist progress of run {self.run_id}: {e}")

    def _close_run(self, status: ImportStatus, error_message: Optional[str] = None) -> None:
        run = self.run_record
        run.status = status
        run.error_message = error_message
        run.finished_at = utcnow()
        run.duration_seconds = int(self._elapsed())
        self._refresh_progress()

    def _record_outcome(self, feed_status: FeedStatus, error_message: Optional[str] = None, recount: bool = True) -> None:
        """Persist the closed run; each step is attempted even if an earlier one fails."""
        steps = []
        if recount:
            steps.append(("recount category products", self.store.recount_category_products))
        steps.append(("save run history", lambda: self.store.save_import_run(self.run_record)))
        steps.append((
            "update feed status",
            lambda: self.store.update_feed_status(self.feed, feed_status, error_message=error_message),
        ))

        for description, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Could not {description} for run {self.run_id}: {e}")
                self.progress.log(logging.ERROR, f"Could not {description}: {e}")

    def _finish_completed(self) -> None:
        run = self.run_record
        self._close_run(ImportStatus.COMPLETED)
        summary = (
            f"Import completed in {run.duration_seconds}s: {run.created} created, "
            f"{run.updated} updated, {run.skipped} skipped, {run.errors} errors"
        )
        self.progress.finish(ImportStatus.COMPLETED, summary)
        self.progress.log(logging.INFO, summary)
        self._record_outcome(FeedStatus.ACTIVE)

    def _finish_failed(self, message: str) -> None:
        self._close_run(ImportStatus.FAILED, error_message=message)
        self.progress.finish(ImportStatus.FAILED, message)
        self.progress.log(logging.ERROR, f"Import failed: {message}")
        self._record_outcome(FeedStatus.ERROR, error_message=message, recount=False)

    def _finish_cancelled(self) -> None:
        run = self.run_record
        self._close_run(ImportStatus.CANCELLED)
        message = f"Import cancelled after {run.processed} items"
        self.progress.finish(ImportStatus.CANCELLED, message)
        self.progress.log(logging.INFO, message)
        self._record_outcome(FeedStatus.ACTIVE)
