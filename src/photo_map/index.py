"""
The shared upload index.

All uploads live in one JSON array stored under a single key. Updates are a
read-modify-write of the whole document. In best-effort mode the last writer
wins and a concurrent append can be lost; in conditional mode each write is a
compare-and-swap on the document's version tag, retried a bounded number of
times.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

import jsonschema

from . import get_collection_schema_path
from .errors import CorruptedIndex, StorageError, UpstreamTimeout, WriteConflict
from .storage import (
    BlobMetadata,
    BlobNotFound,
    BlobStore,
    BlobStoreError,
    BlobStoreTimeout,
    PreconditionFailed,
    content_etag,
)

logger = logging.getLogger(__name__)

DEFAULT_INDEX_KEY = "data/uploads.json"

UploadCollection = List[Dict[str, Any]]


def load_collection_schema() -> Dict[str, Any]:
    with open(get_collection_schema_path(), "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass
class IndexSnapshot:
    """The collection as read, plus what a conditional write must compare against."""
    records: UploadCollection
    etag: Optional[str] = None
    exists: bool = False
    # Built after a read failure; the next write cannot be made conditional
    recovered: bool = False


class UploadIndex:
    def __init__(
        self,
        store: BlobStore,
        key: str = DEFAULT_INDEX_KEY,
        *,
        conditional: bool = False,
        max_attempts: int = 5,
        reset_on_read_error: bool = False,
    ):
        if conditional and not store.supports_conditional_writes:
            raise ValueError(f"{type(store).__name__} does not support conditional writes")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.key = key
        self.conditional = conditional
        self.max_attempts = max_attempts
        self.reset_on_read_error = reset_on_read_error
        self._validator = jsonschema.Draft202012Validator(load_collection_schema())

    @property
    def fallback_prefix(self) -> str:
        """Prefix shared by the canonical key and legacy suffixed copies of it."""
        return PurePosixPath(self.key).with_suffix("").as_posix()

    def parse(self, raw: bytes) -> UploadCollection:
        """
        Decode and validate an index document.

        An empty document is an empty collection. Anything that is not a JSON
        array of upload objects raises CorruptedIndex.
        """
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptedIndex("Uploads data is corrupted", detail=str(e)) from e

        if not text.strip():
            return []

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptedIndex("Uploads data is corrupted", detail=str(e)) from e

        try:
            self._validator.validate(data)
        except jsonschema.ValidationError as e:
            raise CorruptedIndex("Uploads data is corrupted", detail=e.message) from e

        return data

    def serialize(self, records: UploadCollection) -> bytes:
        return json.dumps(records, indent=2, ensure_ascii=False).encode("utf-8")

    async def load(self) -> UploadCollection:
        """Return the current collection; an absent index is empty."""
        snapshot = await self.snapshot()
        return snapshot.records

    async def snapshot(self) -> IndexSnapshot:
        try:
            blob = await self.store.head(self.key)
        except BlobNotFound:
            return IndexSnapshot(records=await self._load_fallback())
        except BlobStoreTimeout as e:
            raise UpstreamTimeout("Timed out reading uploads", detail=str(e)) from e
        except BlobStoreError as e:
            raise StorageError("Failed to read uploads", detail=str(e)) from e

        raw = await self._read(blob)
        etag = content_etag(raw) if self.store.supports_conditional_writes else None
        return IndexSnapshot(records=self.parse(raw), etag=etag, exists=True)

    async def _load_fallback(self) -> UploadCollection:
        """Read the newest legacy copy of the index, if any."""
        try:
            blobs = await self.store.list(self.fallback_prefix)
        except BlobStoreTimeout as e:
            raise UpstreamTimeout("Timed out reading uploads", detail=str(e)) from e
        except BlobStoreError as e:
            raise StorageError("Failed to read uploads", detail=str(e)) from e

        candidates = [blob for blob in blobs if blob.key.endswith(".json")]
        if not candidates:
            return []

        latest = max(candidates, key=lambda blob: blob.uploaded_at)
        logger.warning("Index %s not found, using latest copy %s", self.key, latest.key)
        return self.parse(await self._read(latest))

    async def _read(self, blob: BlobMetadata) -> bytes:
        try:
            return await self.store.read(blob)
        except BlobStoreTimeout as e:
            raise UpstreamTimeout("Timed out reading uploads", detail=str(e)) from e
        except BlobStoreError as e:
            raise StorageError("Failed to read uploads", detail=str(e)) from e

    async def save(
        self,
        records: UploadCollection,
        *,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> None:
        """
        Overwrite the canonical key with ``records``.

        Unconditional unless ``if_match`` or ``if_none_match`` is given, in
        which case PreconditionFailed propagates to the caller.
        """
        try:
            await self.store.put(
                self.key,
                self.serialize(records),
                "application/json",
                if_match=if_match,
                if_none_match=if_none_match,
            )
        except PreconditionFailed:
            raise
        except BlobStoreTimeout as e:
            raise UpstreamTimeout("Timed out saving uploads", detail=str(e)) from e
        except BlobStoreError as e:
            raise StorageError("Failed to save uploads", detail=str(e)) from e

    async def _snapshot_for_write(self) -> IndexSnapshot:
        try:
            return await self.snapshot()
        except StorageError as e:
            if not self.reset_on_read_error:
                raise
            logger.warning("Index %s unreadable (%s), starting a fresh collection", self.key, e.message)
            return IndexSnapshot(records=[], recovered=True)

    async def append(self, entry: Dict[str, Any]) -> UploadCollection:
        """Add ``entry`` to the tail of the collection and persist it."""
        attempts = self.max_attempts if self.conditional else 1
        for attempt in range(1, attempts + 1):
            snapshot = await self._snapshot_for_write()
            records = snapshot.records + [entry]

            if not self.conditional or snapshot.recovered:
                await self.save(records)
                return records

            try:
                await self.save(
                    records,
                    if_match=snapshot.etag if snapshot.exists else None,
                    if_none_match=not snapshot.exists,
                )
                return records
            except PreconditionFailed as e:
                logger.warning(
                    "Index %s changed during append (attempt %d/%d): %s",
                    self.key, attempt, attempts, e,
                )

        raise WriteConflict(
            "Failed to save uploads",
            detail=f"index kept changing after {attempts} attempts",
        )
