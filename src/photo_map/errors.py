"""
Error taxonomy for the ingestion pipeline.

Each error carries the HTTP status it maps to so the web layer can render it
without a lookup table.
"""

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for failures surfaced to the caller of an ingestion."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: Dict[str, Any] = {"error": self.message}
        if self.detail:
            result["detail"] = self.detail
        return result


class BadRequest(IngestionError):
    """Client-correctable input: missing fields, unresolvable address."""

    status_code = 400


class StorageError(IngestionError):
    """The photo or the index could not be read or written."""

    status_code = 500


class CorruptedIndex(StorageError):
    """The index document exists but is not a well-formed upload collection."""


class WriteConflict(StorageError):
    """Conditional index writes kept losing to concurrent writers."""


class UpstreamTimeout(IngestionError):
    """The geocoder or the blob store did not answer in time."""

    status_code = 504
