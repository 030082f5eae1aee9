from feed_importer.domain.imports.models import FeedFormat

UTF8_BOM = b"\xef\xbb\xbf"


def strip_bom(data: bytes) -> bytes:
    if data.startswith(UTF8_BOM):
        return data[len(UTF8_BOM):]
    return data


def detect_feed_format(data: bytes) -> FeedFormat:
    """Classify a feed by its first meaningful byte; used when no format is declared."""
    trimmed = strip_bom(data.lstrip()).lstrip()
    if not trimmed:
        return FeedFormat.XML

    first = trimmed[:1]
    if first == b"<":
        return FeedFormat.XML
    if first in (b"[", b"{"):
        return FeedFormat.JSON
    return FeedFormat.CSV
