import logging
from typing import Dict, List, Optional

from feed_importer.utils.text import slugify

logger = logging.getLogger(__name__)

PATH_DELIMITERS = ("|", " > ", "/")


def split_category_path(path: str) -> List[str]:
    """
    Split a category path into trimmed, non-empty segments.

    The first delimiter that actually produces more than one segment wins, so
    "Phones / Tablets" stays a single segment when the path also uses " > ".
    """
    for delimiter in PATH_DELIMITERS:
        segments = [segment.strip() for segment in path.split(delimiter)]
        segments = [segment for segment in segments if segment]
        if len(segments) > 1:
            return segments

    single = path.strip()
    return [single] if single else []


class CategoryResolver:
    """
    Resolves category paths to leaf category ids, creating missing nodes.

    Lookups are cached for the lifetime of the resolver; create a new one per
    import run.
    """

    def __init__(self, store):
        self.store = store
        self._cache: Dict[str, str] = {}

    def resolve(self, path: str) -> Optional[str]:
        if not path or not path.strip():
            return None

        if path in self._cache:
            return self._cache[path]

        segments = split_category_path(path)
        parent_id: Optional[str] = None
        chain: List[str] = []

        for name in segments:
            chain.append(name)
            chain_key = "\x1f".join(chain)
            cached = self._cache.get(chain_key)
            if cached is not None:
                parent_id = cached
                continue

            slug = slugify(name) or "category"
            parent_id = self.store.find_or_create_category(name, slug, parent_id)
            self._cache[chain_key] = parent_id

        if parent_id is not None:
            self._cache[path] = parent_id
            logger.debug(f"Resolved category path '{path}' -> {parent_id}")
        return parent_id
