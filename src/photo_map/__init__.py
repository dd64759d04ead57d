"""
Photo Map ingestion service.

Accepts geotagged photo uploads over HTTP, stores the photo in a blob store
and appends a record to the shared JSON index used by the map and leaderboard.
"""

from pathlib import Path

__version__ = "0.1.0"


def get_schema_dir() -> Path:
    """Return the path to the directory holding the bundled JSON schemas."""
    return Path(__file__).parent / "schema"


def get_collection_schema_path() -> Path:
    """Return the path to the upload collection JSON schema."""
    return get_schema_dir() / "upload-collection.schema.json"
