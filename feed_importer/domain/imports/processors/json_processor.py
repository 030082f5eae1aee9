import json
from typing import Any, Iterator, List, Optional

from feed_importer.domain.imports.exceptions import ParseError
from feed_importer.domain.imports.models import RawRecord
from feed_importer.utils.text import stringify_value

PRODUCT_ARRAY_KEYS = ("products", "items", "offers", "data", "results", "SHOPITEM")


def load_json_document(data: bytes) -> Any:
    """Parse the whole document; JSON feeds are bounded by the download byte ceiling."""
    try:
        return json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError(f"JSON parse error: {exc}") from exc


def find_products_array(document: Any) -> Optional[List[Any]]:
    """Return the root array, or the first array under a conventional key."""
    if isinstance(document, list):
        return document

    if isinstance(document, dict):
        for key in PRODUCT_ARRAY_KEYS:
            for candidate in (key, key.lower()):
                value = document.get(candidate)
                if isinstance(value, list):
                    return value

    return None


def iter_json_records(document: Any) -> Iterator[RawRecord]:
    """Yield string-valued records; non-object entries are skipped."""
    items = find_products_array(document)
    if items is None:
        raise ParseError("No products array found in JSON feed")

    for item in items:
        if not isinstance(item, dict):
            continue
        record: RawRecord = {}
        for key, value in item.items():
            text = stringify_value(value)
            if text is not None:
                record[str(key)] = text
        yield record
