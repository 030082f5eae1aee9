import threading

import pytest

from feed_importer import bootstrap
from feed_importer.domain.imports.exceptions import ConflictError
from feed_importer.domain.imports.models import FeedFormat, ImportStatus, TargetField
from feed_importer.domain.imports.service import ImportService
from tests.utils.feeds import FEED_URL, BlockingSession, FakeSession, build_shop_xml, shop_item


@pytest.fixture
def feed_body():
    return build_shop_xml([shop_item(n) for n in range(1, 6)])


def test_run_completes_and_leaves_snapshot(store, make_feed, test_settings, feed_body):
    service = ImportService(store, settings=test_settings, session=FakeSession({FEED_URL: feed_body}))
    feed = make_feed()

    run_id = service.start_run(feed)
    assert service.wait(feed.id, timeout=10)

    assert not service.is_running(feed.id)
    progress = service.get_progress(feed.id)
    assert progress.run_id == run_id
    assert progress.status == ImportStatus.COMPLETED
    assert progress.created == 5

    history = service.get_history(feed.id)
    assert [run.id for run in history] == [run_id]
    assert history[0].status == ImportStatus.COMPLETED


def test_second_start_while_running_conflicts(store, make_feed, test_settings, feed_body):
    session = BlockingSession({FEED_URL: feed_body})
    service = ImportService(store, settings=test_settings, session=session)
    feed = make_feed()

    service.start_run(feed)
    assert session.started.wait(5)

    with pytest.raises(ConflictError) as exc_info:
        service.start_run(feed)
    assert exc_info.value.feed_id == feed.id

    session.release.set()
    assert service.wait(feed.id, timeout=10)
    assert len(service.get_history(feed.id)) == 1

    # The slot is free again once the run ended.
    service.start_run(feed)
    assert service.wait(feed.id, timeout=10)
    assert len(service.get_history(feed.id)) == 2


def test_concurrent_starts_yield_exactly_one_run(store, make_feed, test_settings, feed_body):
    session = BlockingSession({FEED_URL: feed_body})
    service = ImportService(store, settings=test_settings, session=session)
    feed = make_feed()
    barrier = threading.Barrier(6)
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            service.start_run(feed)
            result = "started"
        except ConflictError:
            result = "conflict"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    session.release.set()
    assert service.wait(feed.id, timeout=10)
    assert sorted(outcomes) == ["conflict"] * 5 + ["started"]


def test_stop_during_download_cancels_before_first_item(store, make_feed, test_settings, feed_body):
    session = BlockingSession({FEED_URL: feed_body})
    service = ImportService(store, settings=test_settings, session=session)
    feed = make_feed()

    service.start_run(feed)
    assert session.started.wait(5)
    assert service.request_stop(feed.id) is True
    session.release.set()
    assert service.wait(feed.id, timeout=10)

    progress = service.get_progress(feed.id)
    assert progress.status == ImportStatus.CANCELLED
    assert progress.processed == 0
    assert service.get_history(feed.id)[0].status == ImportStatus.CANCELLED


def test_request_stop_without_run(store, test_settings):
    service = ImportService(store, settings=test_settings, session=FakeSession())

    assert service.request_stop("nope") is False


def test_progress_of_unknown_feed_is_idle(store, test_settings):
    service = ImportService(store, settings=test_settings, session=FakeSession())

    progress = service.get_progress("never-ran")

    assert progress.status == ImportStatus.IDLE
    assert progress.feed_id == "never-ran"
    assert progress.run_id is None


def test_failed_run_is_reported_and_slot_released(store, make_feed, test_settings):
    service = ImportService(store, settings=test_settings, session=FakeSession())
    feed = make_feed()

    service.start_run(feed)
    assert service.wait(feed.id, timeout=10)

    progress = service.get_progress(feed.id)
    assert progress.status == ImportStatus.FAILED
    assert progress.message == "HTTP error: 404"
    assert not service.is_running(feed.id)


def test_history_limit(store, make_feed, test_settings, feed_body):
    service = ImportService(store, settings=test_settings, session=FakeSession({FEED_URL: feed_body}))
    feed = make_feed()
    for _ in range(3):
        service.start_run(feed)
        assert service.wait(feed.id, timeout=10)

    assert len(service.get_history(feed.id, limit=2)) == 2
    assert len(service.get_history(feed.id)) == 3


def test_preview_feed_uses_hints(store, test_settings):
    url = "https://shop.example/feed.csv"
    session = FakeSession({url: b"a|b\n1|2\n3|4\n"})
    service = ImportService(store, settings=test_settings, session=session)

    result = service.preview_feed(url, format_hint=FeedFormat.CSV, delimiter_hint="|", limit=1)

    assert result.delimiter == "|"
    assert result.total_count == 2
    assert result.items == [{"a": "1", "b": "2"}]


def test_auto_detect_mappings(store, test_settings):
    service = ImportService(store, settings=test_settings, session=FakeSession())

    mappings = service.auto_detect_mappings(["PRODUCTNAME", "unknown"])

    assert [(m.source_field, m.target_field) for m in mappings] == [("PRODUCTNAME", TargetField.TITLE)]


def test_create_import_service_prepares_logging_and_tables(engine, test_settings, monkeypatch):
    levels = []
    monkeypatch.setattr(bootstrap, "configure_logging", levels.append)

    service = bootstrap.create_import_service(engine=engine, settings=test_settings)

    assert levels == [test_settings.log_level]
    assert service.get_history("shop-1") == []
    assert service.get_progress("shop-1").status == ImportStatus.IDLE
