"""
Mapping of raw feed records onto the canonical FeedItem.

An explicit FieldMapping list is applied in order (later writes to the same
target win). Feeds without a mapping configuration fall back to a fixed set of
source-field aliases; the fallback never runs in addition to explicit rules.
"""
import logging
import re
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from feed_importer.domain.imports.exceptions import ItemError
from feed_importer.domain.imports.models import (
    REGEX_PAYLOAD_SEPARATOR,
    AutoMapping,
    FeedItem,
    FieldMapping,
    RawRecord,
    TargetField,
    TransformType,
    compile_regex_transform,
)

logger = logging.getLogger(__name__)

AUTO_MAPPING_CONFIDENCE = 0.9

# Ordered: a source field is assigned to the first target whose pattern matches.
AUTO_MAPPING_PATTERNS: Tuple[Tuple[TargetField, Tuple[str, ...]], ...] = (
    (TargetField.EAN, ("ean", "ean13", "gtin", "barcode", "item_id")),
    (TargetField.SKU, ("sku", "productno", "kod", "itemgroup_id")),
    (TargetField.EXTERNAL_ID, ("id", "external_id", "ext_id")),
    (TargetField.TITLE, ("productname", "product", "title", "name", "nazov")),
    (TargetField.DESCRIPTION, ("description", "popis", "desc")),
    (TargetField.PRICE, ("price_vat", "price", "cena")),
    (TargetField.IMAGE_URL, ("imgurl", "img_url", "image", "foto")),
    (TargetField.GALLERY_IMAGES, ("imgurl_alternative", "gallery", "images")),
    (TargetField.AFFILIATE_URL, ("url", "link", "product_url")),
    (TargetField.CATEGORY, ("categorytext", "category", "kategoria")),
    (TargetField.BRAND, ("manufacturer", "brand", "vyrobca")),
    (TargetField.STOCK_QUANTITY, ("stock", "quantity", "sklad", "stock_quantity")),
    (TargetField.DELIVERY_TIME, ("delivery", "delivery_date", "dodanie")),
    (TargetField.ATTRIBUTES, ("param", "params")),
)

# Used only when a feed has no mapping configuration at all.
FALLBACK_ALIASES: Tuple[Tuple[TargetField, Tuple[str, ...]], ...] = (
    (TargetField.TITLE, ("PRODUCTNAME", "title", "name", "nazov")),
    (TargetField.DESCRIPTION, ("DESCRIPTION", "description", "popis")),
    (TargetField.PRICE, ("PRICE_VAT", "price", "cena")),
    (TargetField.EAN, ("EAN", "ean", "ean13", "gtin")),
    (TargetField.SKU, ("SKU", "sku", "ITEMGROUP_ID", "kod")),
    (TargetField.IMAGE_URL, ("IMGURL", "image", "image_url", "img_url")),
    (TargetField.CATEGORY, ("CATEGORYTEXT", "category", "kategoria")),
    (TargetField.BRAND, ("MANUFACTURER", "brand", "vyrobca")),
    (TargetField.AFFILIATE_URL, ("URL", "url", "link")),
)

_NON_PRICE_CHARS = re.compile(r"[^\d,.]")


def get_field_value(raw: RawRecord, *keys: str) -> str:
    """Return the first present value among `keys`, trying each key as-is and then lower-cased."""
    for key in keys:
        if key in raw:
            return raw[key]
        lowered = key.lower()
        if lowered in raw:
            return raw[lowered]
    return ""


def apply_transform(value: str, transform_type: TransformType, transform_value: str = "") -> str:
    if transform_type == TransformType.TRIM:
        return value.strip()
    if transform_type == TransformType.LOWERCASE:
        return value.lower()
    if transform_type == TransformType.UPPERCASE:
        return value.upper()
    if transform_type == TransformType.REGEX:
        if REGEX_PAYLOAD_SEPARATOR not in transform_value:
            return value
        pattern, replacement = compile_regex_transform(transform_value)
        return pattern.sub(replacement, value)
    if transform_type == TransformType.DEFAULT:
        return value if value else transform_value
    return value


def parse_price(value: str, decimal_separator: Optional[str] = None) -> float:
    """
    Locale-tolerant price parsing.

    Everything except digits, commas and periods is stripped first. With no
    explicit separator a comma is read as a decimal point, so "19,99" and
    "19.99" both parse but "1,234.56" becomes "1.234.56" and yields 0.0.
    Feeds that use thousands separators set `decimal_separator`.
    """
    cleaned = _NON_PRICE_CHARS.sub("", value or "")
    if decimal_separator == ".":
        cleaned = cleaned.replace(",", "")
    elif decimal_separator == ",":
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", ".")

    if not cleaned:
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        logger.debug(f"Unparseable price '{value}' (normalized to '{cleaned}'); using 0")
        return 0.0


def parse_quantity(value: str) -> int:
    try:
        return int(float(value.strip().replace(",", ".")))
    except (ValueError, OverflowError):
        return 0


def _split_gallery(value: str) -> List[str]:
    return [url.strip() for url in value.split("|") if url.strip()]


_Writer = Callable[[FeedItem, str, str, Optional[str]], None]


def _text_writer(attribute: str, strip: bool = False) -> _Writer:
    def write(item: FeedItem, value: str, source_field: str, decimal_separator: Optional[str]) -> None:
        setattr(item, attribute, value.strip() if strip else value)
    return write


def _price_writer(attribute: str) -> _Writer:
    def write(item: FeedItem, value: str, source_field: str, decimal_separator: Optional[str]) -> None:
        setattr(item, attribute, parse_price(value, decimal_separator))
    return write


def _write_gallery(item: FeedItem, value: str, source_field: str, decimal_separator: Optional[str]) -> None:
    item.gallery_images = _split_gallery(value)


def _write_stock_quantity(item: FeedItem, value: str, source_field: str, decimal_separator: Optional[str]) -> None:
    item.stock_quantity = parse_quantity(value)


def _write_attribute(item: FeedItem, value: str, source_field: str, decimal_separator: Optional[str]) -> None:
    if value:
        item.attributes[source_field] = value


# One writer per TargetField; tests assert the table is exhaustive.
# Match keys and titles are stored stripped so lookups compare like with like.
FIELD_WRITERS: Dict[TargetField, _Writer] = {
    TargetField.TITLE: _text_writer("title", strip=True),
    TargetField.DESCRIPTION: _text_writer("description"),
    TargetField.SHORT_DESCRIPTION: _text_writer("short_description"),
    TargetField.PRICE: _price_writer("price"),
    TargetField.REGULAR_PRICE: _price_writer("regular_price"),
    TargetField.SALE_PRICE: _price_writer("sale_price"),
    TargetField.EAN: _text_writer("ean", strip=True),
    TargetField.SKU: _text_writer("sku", strip=True),
    TargetField.MPN: _text_writer("mpn", strip=True),
    TargetField.EXTERNAL_ID: _text_writer("external_id", strip=True),
    TargetField.IMAGE_URL: _text_writer("image_url"),
    TargetField.GALLERY_IMAGES: _write_gallery,
    TargetField.CATEGORY: _text_writer("category_path"),
    TargetField.BRAND: _text_writer("brand"),
    TargetField.MANUFACTURER: _text_writer("manufacturer"),
    TargetField.STOCK_STATUS: _text_writer("stock_status"),
    TargetField.STOCK_QUANTITY: _write_stock_quantity,
    TargetField.AFFILIATE_URL: _text_writer("affiliate_url"),
    TargetField.BUTTON_TEXT: _text_writer("button_text"),
    TargetField.DELIVERY_TIME: _text_writer("delivery_time"),
    TargetField.ATTRIBUTES: _write_attribute,
}


def _map_with_aliases(raw: RawRecord, decimal_separator: Optional[str]) -> FeedItem:
    item = FeedItem()
    for target, aliases in FALLBACK_ALIASES:
        value = get_field_value(raw, *aliases)
        FIELD_WRITERS[target](item, value, aliases[0], decimal_separator)
    return item


def map_item(
    raw: RawRecord,
    mappings: Sequence[FieldMapping],
    decimal_separator: Optional[str] = None,
) -> Optional[FeedItem]:
    """
    Convert one raw record into a FeedItem.

    Returns None when the resolved title is empty. Raises ItemError when a
    required mapping resolves to an empty value or a transform cannot be
    applied.
    """
    if not mappings:
        item = _map_with_aliases(raw, decimal_separator)
    else:
        item = FeedItem()
        for mapping in mappings:
            value = get_field_value(raw, mapping.source_field)
            if not value and mapping.default_value:
                value = mapping.default_value

            try:
                value = apply_transform(value, mapping.transform_type, mapping.transform_value)
            except (re.error, IndexError) as e:
                raise ItemError(
                    f"Transform of '{mapping.source_field}' failed: {e}",
                    field=mapping.target_field.value,
                ) from e

            if mapping.required and not value.strip():
                raise ItemError(
                    f"Required field '{mapping.source_field}' is empty",
                    field=mapping.target_field.value,
                )

            FIELD_WRITERS[mapping.target_field](item, value, mapping.source_field, decimal_separator)

    if not item.title.strip():
        return None
    return item


@lru_cache(maxsize=1)
def _compiled_auto_patterns() -> Tuple[Tuple[TargetField, Tuple[re.Pattern, ...]], ...]:
    return tuple(
        (target, tuple(re.compile(f"^{re.escape(name)}$", re.IGNORECASE) for name in names))
        for target, names in AUTO_MAPPING_PATTERNS
    )


def auto_detect_mappings(fields: Iterable[str]) -> List[AutoMapping]:
    """
    Guess a target for every source field name.

    Confidence is a constant whenever a pattern matches; unmatched fields are
    left out.
    """
    mappings: List[AutoMapping] = []
    for source_field in fields:
        for target, patterns in _compiled_auto_patterns():
            if any(pattern.match(source_field) for pattern in patterns):
                mappings.append(
                    AutoMapping(
                        source_field=source_field,
                        target_field=target,
                        confidence=AUTO_MAPPING_CONFIDENCE,
                    )
                )
                break
    return mappings
