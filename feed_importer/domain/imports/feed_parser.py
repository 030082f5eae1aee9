"""
Feed download and traversal.

FeedParser fetches a remote feed (size-capped, gzip-transparent), detects the
format and the format-specific hints that were not configured, and walks the
document one RawRecord at a time. The same traversal backs the bounded
preview used when a feed is being configured and the full pass used by the
import engine.
"""
import csv
import logging
import zlib
from typing import Callable, Iterator, Optional, Tuple

import requests

from feed_importer.core.config import Settings, settings as default_settings
from feed_importer.domain.imports.exceptions import FetchError, ParseError
from feed_importer.domain.imports.models import FeedConfig, FeedFormat, ParseResult, RawRecord
from feed_importer.domain.imports.processors.csv_processor import (
    decode_csv_bytes,
    detect_csv_delimiter,
    iter_csv_records,
    read_csv_header,
)
from feed_importer.domain.imports.processors.detection import detect_feed_format
from feed_importer.domain.imports.processors.json_processor import iter_json_records, load_json_document
from feed_importer.domain.imports.processors.xml_processor import (
    detect_encoding,
    detect_item_path,
    iter_xml_records,
    repair_partial_xml,
    sanitize_xml,
)
from feed_importer.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class FeedParser:
    """Downloads and parses one feed URL. Not shared between threads."""

    def __init__(
        self,
        url: str,
        feed_format: Optional[FeedFormat] = None,
        xml_item_path: str = "",
        csv_delimiter: str = "",
        csv_has_header: bool = True,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.feed_format = FeedFormat(feed_format) if feed_format else None
        self.xml_item_path = xml_item_path or ""
        self.csv_delimiter = csv_delimiter or ""
        self.csv_has_header = csv_has_header
        self.settings = settings or default_settings
        self.session = session or requests.Session()

    @classmethod
    def from_feed(
        cls,
        feed: FeedConfig,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
    ) -> "FeedParser":
        return cls(
            feed.url,
            feed_format=feed.format,
            xml_item_path=feed.xml_item_path,
            csv_delimiter=feed.csv_delimiter,
            csv_has_header=feed.csv_has_header,
            settings=settings,
            session=session,
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _request_headers(self) -> dict:
        return {
            "User-Agent": self.settings.feed_user_agent,
            "Accept": "*/*",
            "Accept-Encoding": "gzip",
        }

    def _read_limited(self, response, max_bytes: int) -> Tuple[bytes, bool]:
        """Read the streamed body up to max_bytes; returns (body, truncated)."""
        buffer = bytearray()
        for chunk in response.iter_content(chunk_size=self.settings.feed_download_chunk_bytes):
            if not chunk:
                continue
            buffer.extend(chunk)
            if len(buffer) >= max_bytes:
                return bytes(buffer[:max_bytes]), True
        return bytes(buffer), False

    @staticmethod
    def _inflate_gzip_body(body: bytes, max_bytes: int) -> bytes:
        """Inflate bodies that are gzip files themselves (e.g. feed.xml.gz)."""
        if not body.startswith(GZIP_MAGIC):
            return body
        decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
        return decompressor.decompress(body, max_bytes)

    def download(self) -> bytes:
        """
        Fetch the whole feed.

        Bodies over `feed_max_bytes` are truncated rather than rejected; the XML
        repair step copes with the cut. Raises FetchError on non-2xx status,
        timeout, transport or gzip errors.
        """
        timeout = self.settings.feed_download_timeout_seconds
        max_bytes = self.settings.feed_max_bytes

        try:
            response = self.session.get(self.url, headers=self._request_headers(), timeout=timeout, stream=True)
            with response:
                if not 200 <= response.status_code < 300:
                    raise FetchError(f"HTTP error: {response.status_code}", status_code=response.status_code)
                body, truncated = self._read_limited(response, max_bytes)
        except requests.Timeout as exc:
            raise FetchError(f"Download timed out after {timeout}s: {exc}") from exc
        except requests.RequestException as exc:
            raise FetchError(f"Download error: {exc}") from exc

        if truncated:
            logger.warning(f"Feed {self.url} exceeds {max_bytes} bytes; truncated")

        try:
            body = self._inflate_gzip_body(body, max_bytes)
        except zlib.error as exc:
            raise FetchError(f"gzip error: {exc}") from exc

        logger.info(f"Downloaded feed {self.url}: {len(body) // 1024} KB")
        return body

    def download_partial(self, max_bytes: Optional[int] = None) -> bytes:
        """Range-limited fetch for previews. Transport problems yield b''."""
        max_bytes = max_bytes or self.settings.feed_preview_bytes
        headers = self._request_headers()
        headers["Range"] = f"bytes=0-{max_bytes - 1}"

        try:
            response = self.session.get(
                self.url,
                headers=headers,
                timeout=self.settings.feed_preview_timeout_seconds,
                stream=True,
            )
            with response:
                if not 200 <= response.status_code < 300:
                    logger.warning(f"Preview download of {self.url} returned HTTP {response.status_code}")
                    return b""
                body, _ = self._read_limited(response, max_bytes)
            return self._inflate_gzip_body(body, max_bytes)
        except (requests.RequestException, zlib.error) as exc:
            logger.warning(f"Preview download of {self.url} failed: {exc}")
            return b""

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _open_records(self, data: bytes) -> Tuple[Iterator[RawRecord], ParseResult]:
        """Resolve format and hints for `data` and return a record iterator plus the detected metadata."""
        feed_format = self.feed_format or detect_feed_format(data)
        meta = ParseResult(feed_type=feed_format, parsed_bytes=len(data))

        if feed_format == FeedFormat.XML:
            data = sanitize_xml(data)
            meta.encoding = detect_encoding(data)
            meta.item_path = self.xml_item_path or detect_item_path(data)
            data = repair_partial_xml(data, meta.item_path)
            return iter_xml_records(data, meta.item_path, encoding=meta.encoding), meta

        if feed_format == FeedFormat.CSV:
            text = decode_csv_bytes(data, self.settings.csv_fallback_encoding)
            meta.delimiter = self.csv_delimiter or detect_csv_delimiter(text)
            if self.csv_has_header:
                meta.fields = read_csv_header(text, meta.delimiter)
            return iter_csv_records(text, meta.delimiter, has_header=self.csv_has_header), meta

        document = load_json_document(data)
        meta.encoding = "UTF-8"
        return iter_json_records(document), meta

    def parse_full(
        self,
        data: bytes,
        callback: Callable[[RawRecord], None],
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Invoke `callback` for every record in `data`.

        The cancellation token is checked once per item; ImportCancelled and any
        exception raised by the callback stop the traversal and propagate.
        Returns the number of records delivered.
        """
        records, meta = self._open_records(data)
        delivered = 0
        try:
            for record in records:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                callback(record)
                delivered += 1
        except csv.Error as exc:
            raise ParseError(f"CSV parse error after {delivered} rows: {exc}") from exc

        logger.debug(f"Traversed {delivered} {meta.feed_type.value} records from {self.url}")
        return delivered

    def count_items(self, data: bytes, cancel_token: Optional[CancellationToken] = None) -> int:
        """Count records without mutating anything (first pass of an import)."""
        return self.parse_full(data, lambda record: None, cancel_token=cancel_token)

    def preview(self, limit: Optional[int] = None) -> ParseResult:
        """
        Parse a small prefix of the feed for the mapping UI.

        Returns up to `limit` items, the discovered fields and the detected
        format, encoding, item path and delimiter.
        """
        limit = limit or self.settings.preview_item_limit
        data = self.download_partial(self.settings.feed_preview_bytes)
        if not data.strip():
            raise ParseError(f"Feed {self.url} returned no data")

        records, result = self._open_records(data)
        seen_fields = dict.fromkeys(result.fields)

        try:
            for record in records:
                result.total_count += 1
                if len(result.items) < limit:
                    result.items.append(record)
                    seen_fields.update(dict.fromkeys(record))
        except csv.Error as exc:
            raise ParseError(f"CSV parse error: {exc}") from exc

        result.fields = list(seen_fields)
        logger.info(
            f"Previewed {self.url}: format={result.feed_type.value}, "
            f"{result.total_count} items in {result.parsed_bytes} bytes"
        )
        return result
