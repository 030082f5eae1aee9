"""
Error taxonomy for feed imports.

Fatal errors (FetchError, ParseError) fail the run and are persisted verbatim
on the history row. ItemError is recoverable and only bumps counters.
ImportCancelled is a control-flow marker for a requested stop.
"""
from typing import Optional


class FeedImportError(Exception):
    """Base class for all feed import errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class FetchError(FeedImportError):
    """Raised when a feed cannot be downloaded (status, timeout, transport, gzip)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ParseError(FeedImportError):
    """Raised when a feed document is structurally unparseable."""


class ItemError(FeedImportError):
    """Raised when a single record fails mapping or validation."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ConflictError(FeedImportError):
    """Raised when an import is already running for the feed."""

    def __init__(self, feed_id: str, message: Optional[str] = None):
        self.feed_id = feed_id
        super().__init__(message or f"Import already running for feed '{feed_id}'")


class ImportCancelled(FeedImportError):
    """Raised inside a traversal once a stop was requested. Not an error."""

    def __init__(self, message: str = "Import cancelled"):
        super().__init__(message)
