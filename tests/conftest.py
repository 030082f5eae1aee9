"""
Pytest configuration and fixtures for feed importer tests.

Every test that touches the catalog gets its own SQLite file database.
"""
import pytest
from sqlalchemy import create_engine

from feed_importer.core.config import Settings
from feed_importer.domain.imports.catalog_store import SqlCatalogStore
from feed_importer.domain.imports.feed_parser import FeedParser
from feed_importer.domain.imports.models import FeedConfig
from tests.utils.feeds import FEED_URL, FakeSession


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        progress_update_interval=2,
        history_flush_interval=3,
        progress_log_size=20,
    )


@pytest.fixture
def engine(tmp_path):
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'catalog.db'}",
        connect_args={"check_same_thread": False},
    )
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine):
    catalog = SqlCatalogStore(engine)
    catalog.ensure_tables()
    return catalog


@pytest.fixture
def make_feed():
    def _make_feed(**overrides) -> FeedConfig:
        data = {"id": "shop-1", "name": "Test shop", "url": FEED_URL}
        data.update(overrides)
        return FeedConfig(**data)
    return _make_feed


@pytest.fixture
def make_parser(test_settings):
    def _make_parser(feed: FeedConfig, session: FakeSession) -> FeedParser:
        return FeedParser.from_feed(feed, settings=test_settings, session=session)
    return _make_parser
