"""
Catalog persistence for feed imports.

The engine only talks to the CatalogStore protocol. SqlCatalogStore is the
SQLAlchemy implementation: raw `text()` SQL with upserts written as
`INSERT ... ON CONFLICT ... DO UPDATE`, which both PostgreSQL and SQLite accept.
"""
import json
import logging
import uuid
from typing import List, Optional, Protocol, Tuple

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Engine

from feed_importer.db.session import get_engine
from feed_importer.domain.imports.models import (
    CategoryNode,
    FeedConfig,
    FeedStatus,
    ImportRun,
    ImportStatus,
    MatchField,
    ProductRecord,
)
from feed_importer.utils.date import utcnow
from feed_importer.utils.text import slugify

logger = logging.getLogger(__name__)

# Only these columns may be interpolated into lookup SQL.
MATCH_COLUMNS = {
    MatchField.EAN: "ean",
    MatchField.SKU: "sku",
    MatchField.EXTERNAL_ID: "external_id",
    MatchField.TITLE: "title",
}


class CatalogStore(Protocol):
    def find_product_by_key(self, match_field: MatchField, value: str) -> Optional[Tuple[str, Optional[str]]]:
        ...

    def upsert_product(self, record: ProductRecord) -> str:
        ...

    def find_or_create_category(self, name: str, slug: str, parent_id: Optional[str]) -> str:
        ...

    def recount_category_products(self) -> None:
        ...

    def update_feed_status(self, feed: FeedConfig, status: FeedStatus, error_message: Optional[str] = None) -> None:
        ...

    def save_import_run(self, run: ImportRun) -> None:
        ...

    def list_import_runs(self, feed_id: str, limit: int) -> List[ImportRun]:
        ...


CREATE_TABLE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS categories (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        slug VARCHAR(255) NOT NULL,
        parent_id VARCHAR(36),
        product_count INTEGER DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(36) PRIMARY KEY,
        feed_id VARCHAR(255),
        title TEXT NOT NULL,
        slug VARCHAR(255) NOT NULL,
        description TEXT,
        short_description TEXT,
        price DOUBLE PRECISION DEFAULT 0,
        regular_price DOUBLE PRECISION DEFAULT 0,
        sale_price DOUBLE PRECISION DEFAULT 0,
        ean VARCHAR(64),
        sku VARCHAR(255),
        mpn VARCHAR(255),
        external_id VARCHAR(255),
        image_url TEXT,
        gallery_images TEXT,  -- JSON array
        category_id VARCHAR(36),
        category_path TEXT,
        brand VARCHAR(255),
        manufacturer VARCHAR(255),
        stock_status VARCHAR(64),
        stock_quantity INTEGER DEFAULT 0,
        attributes TEXT,  -- JSON object
        affiliate_url TEXT,
        button_text VARCHAR(255),
        delivery_time VARCHAR(255),
        fingerprint VARCHAR(64),
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_products_ean ON products(ean)",
    "CREATE INDEX IF NOT EXISTS idx_products_sku ON products(sku)",
    "CREATE INDEX IF NOT EXISTS idx_products_external_id ON products(external_id)",
    "CREATE INDEX IF NOT EXISTS idx_products_feed ON products(feed_id)",
    "CREATE INDEX IF NOT EXISTS idx_categories_slug ON categories(slug)",
    """
    CREATE TABLE IF NOT EXISTS feeds (
        id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255),
        url TEXT,
        status VARCHAR(32) NOT NULL,
        last_run TIMESTAMP WITH TIME ZONE,
        last_error TEXT,
        total_products INTEGER DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS import_history (
        id VARCHAR(36) PRIMARY KEY,
        feed_id VARCHAR(255) NOT NULL,
        started_at TIMESTAMP WITH TIME ZONE NOT NULL,
        finished_at TIMESTAMP WITH TIME ZONE,
        duration_seconds INTEGER DEFAULT 0,
        status VARCHAR(32) NOT NULL,
        total_items INTEGER DEFAULT 0,
        processed INTEGER DEFAULT 0,
        created INTEGER DEFAULT 0,
        updated INTEGER DEFAULT 0,
        skipped INTEGER DEFAULT 0,
        errors INTEGER DEFAULT 0,
        triggered_by VARCHAR(64),
        error_message TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_import_history_feed ON import_history(feed_id, started_at)",
)

PRODUCT_COLUMNS = (
    "title", "description", "short_description", "price", "regular_price", "sale_price",
    "ean", "sku", "mpn", "external_id", "image_url", "gallery_images", "category_id",
    "category_path", "brand", "manufacturer", "stock_status", "stock_quantity",
    "attributes", "affiliate_url", "button_text", "delivery_time", "fingerprint",
)

UPSERT_PRODUCT_SQL = f"""
INSERT INTO products (id, feed_id, slug, is_active, {", ".join(PRODUCT_COLUMNS)})
VALUES (:id, :feed_id, :slug, :is_active, {", ".join(":" + column for column in PRODUCT_COLUMNS)})
ON CONFLICT (id) DO UPDATE SET
    feed_id = excluded.feed_id,
    is_active = excluded.is_active,
    {", ".join(f"{column} = excluded.{column}" for column in PRODUCT_COLUMNS)},
    updated_at = CURRENT_TIMESTAMP
"""

UPSERT_FEED_SQL = """
INSERT INTO feeds (id, name, url, status, last_run, last_error, total_products, updated_at)
VALUES (
    :id, :name, :url, :status, :last_run, :last_error,
    (SELECT COUNT(*) FROM products WHERE feed_id = :id),
    CURRENT_TIMESTAMP
)
ON CONFLICT (id) DO UPDATE SET
    name = excluded.name,
    url = excluded.url,
    status = excluded.status,
    last_run = excluded.last_run,
    last_error = excluded.last_error,
    total_products = excluded.total_products,
    updated_at = CURRENT_TIMESTAMP
"""

RUN_COLUMNS = (
    "id", "feed_id", "started_at", "finished_at", "duration_seconds", "status",
    "total_items", "processed", "created", "updated", "skipped", "errors",
    "triggered_by", "error_message",
)

UPSERT_RUN_SQL = f"""
INSERT INTO import_history ({", ".join(RUN_COLUMNS)})
VALUES ({", ".join(":" + column for column in RUN_COLUMNS)})
ON CONFLICT (id) DO UPDATE SET
    {", ".join(f"{column} = excluded.{column}" for column in RUN_COLUMNS if column != "id")}
"""


def _new_product_slug(title: str) -> str:
    # Titles repeat across feeds; the suffix keeps slugs unique.
    base = slugify(title, max_length=180) or "product"
    return f"{base}-{uuid.uuid4().hex[:8]}"


class SqlCatalogStore:
    """CatalogStore backed by a SQLAlchemy engine (PostgreSQL in production)."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def ensure_tables(self) -> None:
        """Create the catalog tables if they don't exist."""
        try:
            with self.engine.begin() as conn:
                for statement in CREATE_TABLE_STATEMENTS:
                    conn.execute(text(statement))
            logger.info("Catalog tables created/verified successfully")
        except Exception as e:
            logger.error(f"Error creating catalog tables: {str(e)}")
            raise

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def find_product_by_key(self, match_field: MatchField, value: str) -> Optional[Tuple[str, Optional[str]]]:
        """Return (id, fingerprint) of the oldest product whose match column equals `value`."""
        if not value:
            return None
        column = MATCH_COLUMNS[MatchField(match_field)]
        query = text(
            f"SELECT id, fingerprint FROM products WHERE {column} = :value "
            "ORDER BY created_at, id LIMIT 1"
        )
        with self.engine.connect() as conn:
            row = conn.execute(query, {"value": value}).fetchone()
        if row is None:
            return None
        return row[0], row[1]

    def upsert_product(self, record: ProductRecord) -> str:
        item = record.item
        product_id = record.id or str(uuid.uuid4())
        params = {
            "id": product_id,
            "feed_id": record.feed_id,
            # Existing products keep their slug; ON CONFLICT never touches it.
            "slug": _new_product_slug(item.title),
            "is_active": True,
            "title": item.title,
            "description": item.description,
            "short_description": item.short_description,
            "price": item.price,
            "regular_price": item.regular_price,
            "sale_price": item.sale_price,
            "ean": item.ean,
            "sku": item.sku,
            "mpn": item.mpn,
            "external_id": item.external_id,
            "image_url": item.image_url,
            "gallery_images": json.dumps(item.gallery_images, ensure_ascii=False),
            "category_id": record.category_id,
            "category_path": item.category_path,
            "brand": item.brand,
            "manufacturer": item.manufacturer,
            "stock_status": item.stock_status,
            "stock_quantity": item.stock_quantity,
            "attributes": json.dumps(item.attributes, ensure_ascii=False),
            "affiliate_url": item.affiliate_url,
            "button_text": item.button_text,
            "delivery_time": item.delivery_time,
            "fingerprint": record.fingerprint,
        }
        with self.engine.begin() as conn:
            conn.execute(text(UPSERT_PRODUCT_SQL), params)
        return product_id

    def count_products(self, feed_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM products"
        params = {}
        if feed_id is not None:
            query += " WHERE feed_id = :feed_id"
            params["feed_id"] = feed_id
        with self.engine.connect() as conn:
            return conn.execute(text(query), params).scalar() or 0

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def find_or_create_category(self, name: str, slug: str, parent_id: Optional[str]) -> str:
        """Return the id of the category with this slug under `parent_id`, creating it if missing."""
        if parent_id is None:
            lookup = text("SELECT id FROM categories WHERE slug = :slug AND parent_id IS NULL")
        else:
            lookup = text("SELECT id FROM categories WHERE slug = :slug AND parent_id = :parent_id")

        with self.engine.begin() as conn:
            existing = conn.execute(lookup, {"slug": slug, "parent_id": parent_id}).scalar()
            if existing:
                return existing

            category_id = str(uuid.uuid4())
            conn.execute(
                text(
                    "INSERT INTO categories (id, name, slug, parent_id, product_count) "
                    "VALUES (:id, :name, :slug, :parent_id, 0)"
                ),
                {"id": category_id, "name": name, "slug": slug, "parent_id": parent_id},
            )
        logger.info(f"Created category '{name}' ({slug})")
        return category_id

    def list_categories(self) -> List[CategoryNode]:
        query = text("SELECT id, name, slug, parent_id, product_count FROM categories ORDER BY name")
        with self.engine.connect() as conn:
            return [CategoryNode(**row) for row in conn.execute(query).mappings()]

    def recount_category_products(self) -> None:
        """Recompute product_count of every category from its active products."""
        query = text(
            """
            UPDATE categories SET product_count = (
                SELECT COUNT(*) FROM products p
                WHERE p.category_id = categories.id AND p.is_active = :active
            )
            """
        )
        with self.engine.begin() as conn:
            conn.execute(query, {"active": True})
        logger.debug("Recounted category product counts")

    # ------------------------------------------------------------------
    # Feeds and history
    # ------------------------------------------------------------------

    def update_feed_status(self, feed: FeedConfig, status: FeedStatus, error_message: Optional[str] = None) -> None:
        query = text(UPSERT_FEED_SQL).bindparams(bindparam("last_run", type_=DateTime(timezone=True)))
        with self.engine.begin() as conn:
            conn.execute(query, {
                "id": feed.id,
                "name": feed.name,
                "url": feed.url,
                "status": FeedStatus(status).value,
                "last_run": utcnow(),
                "last_error": error_message,
            })

    def get_feed_status(self, feed_id: str) -> Optional[dict]:
        query = text(
            "SELECT id, status, last_run, last_error, total_products FROM feeds WHERE id = :id"
        ).columns(last_run=DateTime(timezone=True))
        with self.engine.connect() as conn:
            row = conn.execute(query, {"id": feed_id}).fetchone()
        return dict(row._mapping) if row else None

    def save_import_run(self, run: ImportRun) -> None:
        query = text(UPSERT_RUN_SQL).bindparams(
            bindparam("started_at", type_=DateTime(timezone=True)),
            bindparam("finished_at", type_=DateTime(timezone=True)),
        )
        params = run.model_dump()
        params["status"] = run.status.value
        with self.engine.begin() as conn:
            conn.execute(query, {column: params[column] for column in RUN_COLUMNS})

    def list_import_runs(self, feed_id: str, limit: int) -> List[ImportRun]:
        """Newest runs first."""
        query = text(
            f"SELECT {', '.join(RUN_COLUMNS)} FROM import_history "
            "WHERE feed_id = :feed_id ORDER BY started_at DESC LIMIT :limit"
        ).columns(
            started_at=DateTime(timezone=True),
            finished_at=DateTime(timezone=True),
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query, {"feed_id": feed_id, "limit": limit}).fetchall()

        runs = []
        for row in rows:
            data = dict(row._mapping)
            data["status"] = ImportStatus(data["status"])
            runs.append(ImportRun(**data))
        return runs
