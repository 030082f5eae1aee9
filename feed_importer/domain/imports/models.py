"""
Data model for feed imports.

Configuration objects (FeedConfig, FieldMapping) and the values exchanged
with callers (ImportRun, ImportProgress, ParseResult) are pydantic models;
the per-item FeedItem is a plain dataclass because one is built for every
source record.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


REGEX_PAYLOAD_SEPARATOR = "|||"
_GROUP_REFERENCE = re.compile(r"\$\$|\$\{(\w+)\}|\$(\d+)")

# A raw source record; every value is normalized to a string by the parsers.
RawRecord = Dict[str, str]


@lru_cache(maxsize=256)
def compile_regex_transform(payload: str) -> Tuple[re.Pattern, str]:
    """
    Split a `pattern|||replacement` payload and translate the replacement.

    `$1`, `${name}` and `$$` become Python group references and a literal `$`;
    backslashes and any other `$` stay literal.
    """
    pattern, replacement = payload.split(REGEX_PAYLOAD_SEPARATOR, 1)
    replacement = replacement.replace("\\", "\\\\")
    replacement = _GROUP_REFERENCE.sub(
        lambda m: "$" if m.group(0) == "$$" else f"\\g<{m.group(1) or m.group(2)}>",
        replacement,
    )
    return re.compile(pattern), replacement


class FeedFormat(str, Enum):
    XML = "xml"
    CSV = "csv"
    JSON = "json"


class ImportMode(str, Enum):
    CREATE_UPDATE = "create_update"
    CREATE_ONLY = "create_only"
    UPDATE_ONLY = "update_only"


class MatchField(str, Enum):
    EAN = "ean"
    SKU = "sku"
    EXTERNAL_ID = "external_id"
    TITLE = "title"


class TransformType(str, Enum):
    NONE = "none"
    TRIM = "trim"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    REGEX = "regex"
    DEFAULT = "default"


class TargetField(str, Enum):
    TITLE = "title"
    DESCRIPTION = "description"
    SHORT_DESCRIPTION = "short_description"
    PRICE = "price"
    REGULAR_PRICE = "regular_price"
    SALE_PRICE = "sale_price"
    EAN = "ean"
    SKU = "sku"
    MPN = "mpn"
    EXTERNAL_ID = "external_id"
    IMAGE_URL = "image_url"
    GALLERY_IMAGES = "gallery_images"
    CATEGORY = "category"
    BRAND = "brand"
    MANUFACTURER = "manufacturer"
    STOCK_STATUS = "stock_status"
    STOCK_QUANTITY = "stock_quantity"
    AFFILIATE_URL = "affiliate_url"
    BUTTON_TEXT = "button_text"
    DELIVERY_TIME = "delivery_time"
    ATTRIBUTES = "attributes"


class ImportStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FeedStatus(str, Enum):
    ACTIVE = "active"
    RUNNING = "running"
    ERROR = "error"
    PAUSED = "paused"


class FieldMapping(BaseModel):
    """One source field → canonical field rule, applied in declaration order."""
    source_field: str
    target_field: TargetField
    transform_type: TransformType = TransformType.NONE
    transform_value: str = ""
    default_value: str = ""
    required: bool = False

    @field_validator("transform_type", mode="before")
    def blank_transform_is_none(cls, value):
        return value or TransformType.NONE

    @model_validator(mode="after")
    def validate_regex_payload(self) -> "FieldMapping":
        if self.transform_type != TransformType.REGEX:
            return self
        parts = self.transform_value.split(REGEX_PAYLOAD_SEPARATOR)
        if len(parts) != 2:
            raise ValueError(
                f"regex transform for '{self.source_field}' must look like 'pattern{REGEX_PAYLOAD_SEPARATOR}replacement'"
            )
        try:
            pattern, replacement = compile_regex_transform(self.transform_value)
            # Group references are resolved when the template is built, even without a match.
            pattern.sub(replacement, "")
        except (re.error, IndexError) as exc:
            raise ValueError(f"Invalid regex for '{self.source_field}': {exc}") from exc
        return self


class FeedConfig(BaseModel):
    """Read-only description of a feed for the duration of one run."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    url: str
    format: Optional[FeedFormat] = None
    xml_item_path: str = ""
    csv_delimiter: str = ""
    csv_has_header: bool = True
    import_mode: ImportMode = ImportMode.CREATE_UPDATE
    match_by: MatchField = MatchField.EAN
    field_mappings: List[FieldMapping] = Field(default_factory=list)
    default_category: Optional[str] = None
    import_images: bool = True
    # None keeps the legacy "comma is a decimal point" price parsing.
    decimal_separator: Optional[Literal[",", "."]] = None

    @field_validator("format", mode="before")
    def blank_format_is_none(cls, value):
        return value or None

    @field_validator("csv_delimiter")
    def single_character_delimiter(cls, value: str) -> str:
        if value == "\\t":
            return "\t"
        if len(value) > 1:
            raise ValueError("csv_delimiter must be a single character")
        return value


@dataclass
class FeedItem:
    """Canonical, format-independent product record built from one source item."""
    title: str = ""
    description: str = ""
    short_description: str = ""
    price: float = 0.0
    regular_price: float = 0.0
    sale_price: float = 0.0
    ean: str = ""
    sku: str = ""
    mpn: str = ""
    external_id: str = ""
    image_url: str = ""
    gallery_images: List[str] = field(default_factory=list)
    category_path: str = ""
    brand: str = ""
    manufacturer: str = ""
    stock_status: str = ""
    stock_quantity: int = 0
    attributes: Dict[str, str] = field(default_factory=dict)
    affiliate_url: str = ""
    button_text: str = ""
    delivery_time: str = ""

    def match_value(self, match_by: MatchField) -> str:
        return getattr(self, match_by.value)


@dataclass
class ProductRecord:
    """Row handed to the catalog store; `id` is None for new products."""
    item: FeedItem
    feed_id: str
    fingerprint: str
    category_id: Optional[str] = None
    id: Optional[str] = None


class CategoryNode(BaseModel):
    id: str
    name: str
    slug: str
    parent_id: Optional[str] = None
    product_count: int = 0


class ImportRun(BaseModel):
    id: str
    feed_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: int = 0
    status: ImportStatus = ImportStatus.RUNNING
    total_items: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    triggered_by: str = "manual"
    error_message: Optional[str] = None


class LogEntry(BaseModel):
    time: datetime
    level: str
    message: str


class ImportProgress(BaseModel):
    feed_id: str
    run_id: Optional[str] = None
    status: ImportStatus = ImportStatus.IDLE
    percent: int = 0
    total: int = 0
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    message: str = ""
    current_item: str = ""
    elapsed_seconds: int = 0
    eta_seconds: int = 0
    speed: float = 0.0
    logs: List[LogEntry] = Field(default_factory=list)


class ParseResult(BaseModel):
    items: List[Dict[str, str]] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    total_count: int = 0
    item_path: str = ""
    encoding: str = ""
    delimiter: str = ""
    feed_type: Optional[FeedFormat] = None
    parsed_bytes: int = 0


class AutoMapping(BaseModel):
    source_field: str
    target_field: TargetField
    confidence: float
