"""
Photo ingestion: parse, locate, store the photo, then record it in the index.

The photo is written before the index is touched, so a failed photo write
never leaves a record pointing at a missing object. The reverse is possible:
if the index update fails the photo is already stored, and the error says so.
"""

import logging
import posixpath
import re
from typing import Callable, Iterable, Mapping, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from .errors import BadRequest, IngestionError, StorageError, UpstreamTimeout
from .index import UploadIndex
from .location import GeocodingTimeout, Location, LocationError, LocationResolver
from .multipart import DEFAULT_FILENAME, MultipartParser, parse_boundary
from .records import (
    DEFAULT_KNOWN_UPLOADERS,
    UploadRecord,
    canonical_uploader,
    epoch_millis,
    generate_record_id,
    utc_timestamp,
)
from .storage import BlobMetadata, BlobStore, BlobStoreError, BlobStoreTimeout

logger = logging.getLogger(__name__)

DEFAULT_PHOTO_PREFIX = "uploads/"

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

# Transcodes an image (HEIC/HEIF) to JPEG bytes
ImageConverter = Callable[[bytes], bytes]


def mime_from_filename(name: Optional[str]) -> str:
    _, ext = posixpath.splitext((name or "").lower())
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def is_heic(name: Optional[str]) -> bool:
    _, ext = posixpath.splitext((name or "").lower())
    return ext in (".heic", ".heif")


def safe_filename(name: str) -> str:
    """Drop any client-side directory and control characters, and replace whitespace runs with ``_``."""
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    base = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", base)
    return re.sub(r"\s+", "_", base) or DEFAULT_FILENAME


def destination_name(file_name: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = epoch_millis()
    return f"{now_ms}_{safe_filename(file_name)}"


class IngestionPipeline:
    def __init__(
        self,
        store: BlobStore,
        index: UploadIndex,
        resolver: LocationResolver,
        *,
        parser: Optional[MultipartParser] = None,
        photo_prefix: str = DEFAULT_PHOTO_PREFIX,
        known_uploaders: Iterable[str] = DEFAULT_KNOWN_UPLOADERS,
        converter: Optional[ImageConverter] = None,
    ):
        self.store = store
        self.index = index
        self.resolver = resolver
        self.parser = parser or MultipartParser()
        self.photo_prefix = photo_prefix
        self.known_uploaders = tuple(known_uploaders)
        self.converter = converter

    async def ingest(self, body: bytes, content_type: str) -> UploadRecord:
        """Ingest a raw multipart/form-data request body."""
        boundary = parse_boundary(content_type)
        if not boundary:
            raise BadRequest("missing boundary")

        form = self.parser.parse(body, boundary)
        uploader = form.fields.get("uploader", "").strip()
        if not uploader or form.file_content is None:
            raise BadRequest("missing uploader or file")

        file_name = form.file_name or DEFAULT_FILENAME
        return await self.submit(
            uploader,
            file_name,
            form.file_content,
            form.fields,
            original_path=f"(browser-uploaded) {file_name}",
        )

    async def submit(
        self,
        uploader: str,
        file_name: str,
        content: bytes,
        fields: Mapping[str, str],
        original_path: str,
    ) -> UploadRecord:
        """
        Store a photo and append its record to the index.

        ``fields`` carries the location inputs (``lat``, ``lng``, ``address``).
        """
        uploader = canonical_uploader(uploader, self.known_uploaders)
        location = await self._resolve(fields)

        if self.converter is not None and is_heic(file_name):
            content, file_name = await self._convert(content, file_name)

        key = f"{self.photo_prefix}{destination_name(file_name)}"
        photo = await self._store_photo(key, content, mime_from_filename(file_name))

        record = UploadRecord(
            id=generate_record_id(),
            uploader=uploader,
            lat=location.lat,
            lng=location.lng,
            address=location.address,
            image=photo.url,
            original_path=original_path,
            created_at=utc_timestamp(),
        )
        await self._publish(record)

        logger.info(
            "Ingested %s from %s at (%s, %s) -> %s",
            record.id, record.uploader, record.lat, record.lng, record.image,
        )
        return record

    async def _resolve(self, fields: Mapping[str, str]) -> Location:
        try:
            return await self.resolver.resolve(fields)
        except GeocodingTimeout as e:
            raise UpstreamTimeout("Geocoding timed out") from e
        except LocationError as e:
            raise BadRequest(str(e)) from e

    async def _convert(self, content: bytes, file_name: str) -> Tuple[bytes, str]:
        try:
            converted = await run_in_threadpool(self.converter, content)
        except Exception as e:
            logger.exception("Image conversion failed for %s", file_name)
            raise IngestionError("Failed to convert image", detail=str(e)) from e
        stem, _ = posixpath.splitext(file_name)
        return converted, f"{stem}.jpg"

    async def _store_photo(self, key: str, content: bytes, content_type: str) -> BlobMetadata:
        try:
            return await self.store.put(key, content, content_type)
        except BlobStoreTimeout as e:
            logger.error("Timed out storing photo %s: %s", key, e)
            raise UpstreamTimeout("Timed out saving photo", detail=str(e)) from e
        except BlobStoreError as e:
            logger.error("Failed to store photo %s: %s", key, e)
            raise StorageError("Failed to save photo", detail=str(e)) from e

    async def _publish(self, record: UploadRecord) -> None:
        try:
            await self.index.append(record.to_dict())
        except (StorageError, UpstreamTimeout) as e:
            logger.error("Photo %s stored but index update failed: %s", record.image, e.detail or e.message)
            raise type(e)(
                f"Photo stored but index update failed: {e.message}",
                detail=f"{record.image}: {e.detail}" if e.detail else record.image,
            ) from e
