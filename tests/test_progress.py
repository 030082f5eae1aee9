import logging
from datetime import datetime, timezone

from feed_importer.core.logging_config import configure_logging
from feed_importer.domain.imports.models import ImportRun, ImportStatus
from feed_importer.domain.imports.progress import ProgressTracker, compute_rates
from feed_importer.utils.cancellation import CancellationToken
from feed_importer.utils.text import stringify_value


def test_compute_rates():
    assert compute_rates(0, 100, 0) == (0, 0.0, 0)
    assert compute_rates(50, 100, 0) == (50, 0.0, 0)
    assert compute_rates(50, 100, 10) == (50, 5.0, 10)
    assert compute_rates(5, 0, 1) == (0, 5.0, 0)


def test_snapshot_is_a_deep_copy():
    tracker = ProgressTracker("shop-1", log_size=3)
    tracker.start("run-1")
    tracker.log(logging.INFO, "first")

    snapshot = tracker.snapshot()
    tracker.log(logging.WARNING, "second")
    tracker.set_message("changed")

    assert snapshot.message == "Starting import"
    assert [entry.message for entry in snapshot.logs] == ["first"]
    assert tracker.snapshot().logs[-1].level == "warning"


def test_refresh_copies_counters_and_rates():
    tracker = ProgressTracker("shop-1")
    run = ImportRun(id="run-1", feed_id="shop-1", started_at=datetime.now(timezone.utc),
                    total_items=200, processed=50, created=40, skipped=10)

    tracker.refresh(run, elapsed=10.0, current_item="Chair")
    progress = tracker.snapshot()

    assert (progress.percent, progress.speed, progress.eta_seconds) == (25, 5.0, 30)
    assert (progress.created, progress.skipped, progress.current_item) == (40, 10, "Chair")

    tracker.finish(ImportStatus.COMPLETED, "done")
    assert tracker.snapshot().percent == 100
    assert tracker.snapshot().eta_seconds == 0


def test_log_is_rolling_and_mirrored(caplog):
    tracker = ProgressTracker("shop-1", log_size=2)

    with caplog.at_level(logging.INFO, logger="feed_importer"):
        for n in range(5):
            tracker.log(logging.INFO, f"entry {n}")

    assert [entry.message for entry in tracker.snapshot().logs] == ["entry 3", "entry 4"]
    assert "[shop-1] entry 0" in caplog.text


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()

    token.cancel()

    assert token.cancelled


def test_stringify_value():
    assert stringify_value(None) is None
    assert stringify_value(False) == "false"
    assert stringify_value(3.5) == "3.5"
    assert stringify_value({"a": "č"}) == '{"a": "č"}'
    assert stringify_value(b"raw") == "raw"


def test_configure_logging_sets_package_level(monkeypatch):
    from feed_importer.core import logging_config

    monkeypatch.setattr(logging_config, "_is_configured", False)
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("debug")
        assert logging.getLogger("feed_importer").level == logging.DEBUG
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("feed_importer").setLevel(logging.NOTSET)
