"""
Process-level wiring for hosts that embed the importer.

Configures logging, makes sure the catalog tables exist and returns a ready
ImportService. Call once at startup.
"""
import logging
from typing import Optional

from sqlalchemy.engine import Engine

from feed_importer.core.config import Settings, settings as default_settings
from feed_importer.core.logging_config import configure_logging
from feed_importer.db.session import get_engine
from feed_importer.domain.imports.catalog_store import SqlCatalogStore
from feed_importer.domain.imports.service import ImportService

logger = logging.getLogger(__name__)


def create_import_service(engine: Optional[Engine] = None, settings: Optional[Settings] = None) -> ImportService:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    store = SqlCatalogStore(engine or get_engine())
    store.ensure_tables()
    logger.info("Feed importer ready")
    return ImportService(store, settings=settings)
