import hashlib
from typing import Optional

from feed_importer.domain.imports.models import FeedItem


def fingerprint_content(item: FeedItem) -> str:
    """
    Canonical content string for change detection.

    Price is rendered with two decimals so 10 and 10.0 agree. Stock and
    attributes are deliberately left out.
    """
    return "|".join([
        item.title,
        item.description,
        item.ean,
        f"{item.price:.2f}",
        item.image_url,
        item.category_path,
    ])


def calculate_item_fingerprint(item: FeedItem) -> str:
    """Return the SHA-256 hex digest of the item's canonical content."""
    return hashlib.sha256(fingerprint_content(item).encode("utf-8")).hexdigest()


def has_changed(fingerprint: str, stored_fingerprint: Optional[str]) -> bool:
    """A product without a stored fingerprint always counts as changed."""
    if not stored_fingerprint:
        return True
    return fingerprint != stored_fingerprint
