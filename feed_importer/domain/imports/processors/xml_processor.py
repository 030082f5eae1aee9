"""
XML feed traversal.

Remote XML feeds are often truncated mid-document or contain stray control
characters, so the raw bytes go through sanitize_xml() and repair_partial_xml()
before a depth-tracked lxml iterparse walk turns every item element into a
flat RawRecord keyed by the tag name that directly encloses each value.
"""
import io
import logging
import re
from typing import Iterator, Optional

from lxml import etree

from feed_importer.domain.imports.models import RawRecord
from feed_importer.domain.imports.processors.detection import strip_bom

logger = logging.getLogger(__name__)

DEFAULT_ITEM_PATH = "SHOPITEM"
ITEM_PATH_CANDIDATES = ("SHOPITEM", "product", "item", "offer", "entry", "PRODUCT", "ITEM")
DEFAULT_ENCODING = "UTF-8"

_CONTROL_CHARS = re.compile(rb"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_ENCODING_DECLARATION = re.compile(rb"""encoding=["']([^"']+)["']""")
_ROOT_ELEMENT = re.compile(rb"<(?![?!/])([A-Za-z_][\w.:-]*)")


def sanitize_xml(data: bytes) -> bytes:
    """Drop the UTF-8 BOM and control bytes that are illegal in XML 1.0."""
    return _CONTROL_CHARS.sub(b"", strip_bom(data))


def detect_encoding(data: bytes) -> str:
    """Return the encoding named by the XML declaration, or UTF-8."""
    match = _ENCODING_DECLARATION.search(data[:512])
    if match:
        return match.group(1).decode("ascii", errors="ignore")
    return DEFAULT_ENCODING


def detect_item_path(data: bytes) -> str:
    """Guess the repeating item element from a list of conventional names."""
    lowered = data.lower()
    for candidate in ITEM_PATH_CANDIDATES:
        pattern = rb"<" + re.escape(candidate.lower().encode("ascii")) + rb"[\s>/]"
        if re.search(pattern, lowered):
            return candidate
    return DEFAULT_ITEM_PATH


def _root_element_name(data: bytes) -> Optional[bytes]:
    match = _ROOT_ELEMENT.search(data)
    return match.group(1) if match else None


def repair_partial_xml(data: bytes, item_path: str) -> bytes:
    """
    Cut the document after the last complete item and re-close the root.

    A trailing, partially downloaded item is dropped instead of being
    auto-closed by the recovering parser. Tag names match case-insensitively.
    """
    lowered = data.lower()
    item_tag = item_path.lower().encode("utf-8")
    last_close = lowered.rfind(b"</" + item_tag + b">")

    if last_close >= 0:
        data = data[:last_close + len(item_tag) + 3]
    else:
        first_open = re.search(b"<" + re.escape(item_tag) + rb"[\s>/]", lowered)
        if first_open:
            data = data[:first_open.start()]

    root = _root_element_name(data)
    if root is None or root.lower() == item_tag:
        return data

    root_close = b"</" + re.escape(root.lower()) + rb"\s*>"
    if not re.search(root_close, data.lower()):
        data = data.rstrip() + b"\n</" + root + b">"
    return data


def iter_xml_records(data: bytes, item_path: str, encoding: Optional[str] = None) -> Iterator[RawRecord]:
    """
    Yield one RawRecord per item element.

    Expects data that already went through sanitize_xml/repair_partial_xml.
    The parser runs in recover mode with entity resolution and network access
    disabled; a document it cannot read any further simply ends the traversal.
    `encoding` overrides whatever the document declares.
    """
    target = item_path.lower()
    context = etree.iterparse(
        io.BytesIO(data),
        events=("start", "end"),
        recover=True,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
        encoding=encoding,
    )

    depth = 0
    item_depth = 0
    record: Optional[RawRecord] = None

    try:
        for event, elem in context:
            if not isinstance(elem.tag, str):
                continue
            name = etree.QName(elem).localname

            if event == "start":
                depth += 1
                if record is None and name.lower() == target:
                    record = {}
                    item_depth = depth
                continue

            if record is not None:
                if depth > item_depth:
                    value = (elem.text or "").strip()
                    if value:
                        record[name] = value
                elif depth == item_depth:
                    if record:
                        yield record
                    record = None
                    elem.clear()
                    parent = elem.getparent()
                    while parent is not None and elem.getprevious() is not None:
                        del parent[0]
            depth -= 1
    except etree.XMLSyntaxError as exc:
        logger.warning(f"XML traversal stopped early on unrecoverable markup: {exc}")
