import csv
import io
import logging
import sys
from typing import Iterator, List, Optional

from feed_importer.domain.imports.models import RawRecord

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = ";"
DELIMITER_CANDIDATES = (";", ",", "\t", "|")
DELIMITER_SAMPLE_LINES = 4

# Product descriptions routinely exceed the csv module's 128 KiB field default.
csv.field_size_limit(min(sys.maxsize, 2**31 - 1))


def decode_csv_bytes(data: bytes, fallback_encoding: str = "windows-1250") -> str:
    """Decode as UTF-8 (BOM tolerant), falling back to a regional single-byte charset."""
    data = data.replace(b"\x00", b"")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info(f"CSV feed is not valid UTF-8; decoding as {fallback_encoding}")
        return data.decode(fallback_encoding, errors="replace")


def detect_csv_delimiter(text: str) -> str:
    """
    Pick the delimiter whose header-line count repeats most often in the next lines.

    Candidates that never occur on the header line are ignored; ties keep the
    earlier candidate, and `;` is the default.
    """
    lines = text.split("\n")
    if len(lines) < 2:
        return DEFAULT_DELIMITER

    header = lines[0]
    sample = lines[1:1 + DELIMITER_SAMPLE_LINES]
    best = DEFAULT_DELIMITER
    best_score = 0

    for delimiter in DELIMITER_CANDIDATES:
        header_count = header.count(delimiter)
        if header_count == 0:
            continue
        score = sum(1 for line in sample if line.count(delimiter) == header_count)
        if score > best_score:
            best_score = score
            best = delimiter

    return best


def _reader(text: str, delimiter: str):
    # Non-strict dialect: stray quotes inside unquoted fields are kept literally.
    return csv.reader(
        io.StringIO(text, newline=""),
        delimiter=delimiter,
        skipinitialspace=True,
        strict=False,
    )


def iter_csv_records(text: str, delimiter: str, has_header: bool = True) -> Iterator[RawRecord]:
    """
    Yield records keyed by header name.

    Rows are zipped positionally against the header: short rows leave the
    trailing fields absent and extra cells are dropped. Blank rows are skipped.
    Without a header row, columns are named col_0, col_1, ...
    """
    headers: Optional[List[str]] = None

    for row in _reader(text, delimiter):
        if not row or all(not cell.strip() for cell in row):
            continue

        if headers is None:
            if has_header:
                headers = [cell.strip() for cell in row]
                continue
            headers = [f"col_{i}" for i in range(len(row))]

        yield {headers[i]: value for i, value in enumerate(row) if i < len(headers)}


def read_csv_header(text: str, delimiter: str) -> List[str]:
    for row in _reader(text, delimiter):
        if row:
            return [cell.strip() for cell in row]
    return []
