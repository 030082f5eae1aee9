"""
Entry point for callers that start, stop and observe feed imports.

ImportService keeps at most one live ImportEngine per feed id. Each run
executes on its own daemon thread; the registry entry is removed when that
thread exits, whatever the outcome, and the final progress snapshot stays
available for polling.
"""
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

import requests

from feed_importer.core.config import Settings, settings as default_settings
from feed_importer.domain.imports.catalog_store import CatalogStore
from feed_importer.domain.imports.engine import ImportEngine
from feed_importer.domain.imports.exceptions import ConflictError
from feed_importer.domain.imports.feed_parser import FeedParser
from feed_importer.domain.imports.mapper import auto_detect_mappings
from feed_importer.domain.imports.models import (
    AutoMapping,
    FeedConfig,
    FeedFormat,
    ImportProgress,
    ImportRun,
    ParseResult,
)

logger = logging.getLogger(__name__)

ParserFactory = Callable[[FeedConfig], FeedParser]


class ImportService:
    def __init__(
        self,
        store: CatalogStore,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        parser_factory: Optional[ParserFactory] = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.session = session
        self._parser_factory = parser_factory
        self._lock = threading.Lock()
        self._engines: Dict[str, ImportEngine] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._last_progress: Dict[str, ImportProgress] = {}

    def _build_parser(self, feed: FeedConfig) -> FeedParser:
        if self._parser_factory is not None:
            return self._parser_factory(feed)
        return FeedParser.from_feed(feed, settings=self.settings, session=self.session)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_run(self, feed: FeedConfig, triggered_by: str = "manual") -> str:
        """
        Start an import of `feed` in the background and return the run id.

        Raises ConflictError, without side effects, when the feed already has
        a live run.
        """
        with self._lock:
            if feed.id in self._engines:
                raise ConflictError(feed.id)

            engine = ImportEngine(
                feed,
                self.store,
                triggered_by=triggered_by,
                settings=self.settings,
                parser=self._build_parser(feed),
            )
            thread = threading.Thread(
                target=self._run_engine,
                args=(engine,),
                name=f"feed-import-{feed.id}",
                daemon=True,
            )
            self._engines[feed.id] = engine
            self._threads[feed.id] = thread
            thread.start()

        logger.info(f"Started import run {engine.run_id} for feed {feed.id} ({triggered_by})")
        return engine.run_id

    def _run_engine(self, engine: ImportEngine) -> None:
        feed_id = engine.feed.id
        try:
            run = engine.run()
            logger.info(f"Import run {run.id} for feed {feed_id} finished: {run.status.value}")
        except Exception:
            logger.exception(f"Import run {engine.run_id} for feed {feed_id} crashed")
        finally:
            with self._lock:
                self._last_progress[feed_id] = engine.get_progress()
                self._engines.pop(feed_id, None)
                self._threads.pop(feed_id, None)

    def request_stop(self, feed_id: str) -> bool:
        """Ask the live run of `feed_id` to stop; False when nothing is running."""
        with self._lock:
            engine = self._engines.get(feed_id)
        if engine is None:
            return False
        engine.request_stop()
        return True

    def is_running(self, feed_id: str) -> bool:
        with self._lock:
            return feed_id in self._engines

    def wait(self, feed_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the live run of `feed_id` ends; returns False on timeout."""
        with self._lock:
            thread = self._threads.get(feed_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def get_progress(self, feed_id: str) -> ImportProgress:
        with self._lock:
            engine = self._engines.get(feed_id)
            if engine is None:
                last = self._last_progress.get(feed_id)
                return last.model_copy(deep=True) if last else ImportProgress(feed_id=feed_id)
        return engine.get_progress()

    def get_history(self, feed_id: str, limit: Optional[int] = None) -> List[ImportRun]:
        return self.store.list_import_runs(feed_id, limit or self.settings.history_default_limit)

    # ------------------------------------------------------------------
    # Feed configuration helpers
    # ------------------------------------------------------------------

    def preview_feed(
        self,
        url: str,
        format_hint: Optional[FeedFormat] = None,
        item_path_hint: str = "",
        delimiter_hint: str = "",
        limit: Optional[int] = None,
    ) -> ParseResult:
        parser = FeedParser(
            url,
            feed_format=format_hint,
            xml_item_path=item_path_hint,
            csv_delimiter=delimiter_hint,
            settings=self.settings,
            session=self.session,
        )
        return parser.preview(limit=limit)

    def auto_detect_mappings(self, fields: Iterable[str]) -> List[AutoMapping]:
        return auto_detect_mappings(fields)
