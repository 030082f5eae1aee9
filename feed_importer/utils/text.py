import json
import re
import unicodedata
from typing import Any, Optional

SLUG_MAX_LENGTH = 200


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """
    Convert text to a URL-safe slug.

    Diacritics are dropped (NFKD), anything that is not a-z0-9 collapses into
    a single hyphen.

    Examples:
        >>> slugify("Mobilné telefóny")
        'mobilne-telefony'
        >>> slugify("TV & Audio")
        'tv-audio'
    """
    text = unicodedata.normalize("NFKD", text.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text[:max_length].rstrip("-")


def stringify_value(value: Any) -> Optional[str]:
    """
    Normalize a parsed feed value to a string.

    Returns None for nulls so callers can drop the key entirely.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    return str(value)
