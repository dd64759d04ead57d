"""
Blob storage backends.

A blob store maps string keys to bytes and hands back a public URL for each
object. There are no multi-key transactions. Backends that can compare a
version tag before writing advertise ``supports_conditional_writes``.
"""

import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

DEFAULT_BLOB_API_URL = "https://blob.vercel-storage.com"


class BlobStoreError(Exception):
    """A blob operation failed."""


class BlobNotFound(BlobStoreError):
    """No blob exists under the requested key."""


class PreconditionFailed(BlobStoreError):
    """A conditional write lost against a concurrent writer."""


class BlobStoreTimeout(BlobStoreError):
    """The store did not answer within the configured timeout."""


@dataclass(frozen=True)
class BlobMetadata:
    key: str
    url: str
    uploaded_at: datetime
    size: int = 0
    etag: Optional[str] = None
    content_type: Optional[str] = None


def content_etag(data: bytes) -> str:
    """Return the SHA-256 of ``data`` as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def check_precondition(current_etag: Optional[str], if_match: Optional[str], if_none_match: bool) -> None:
    """
    Raise PreconditionFailed unless the current version satisfies the write.

    ``current_etag`` is None when the key does not exist.
    """
    if if_none_match and current_etag is not None:
        raise PreconditionFailed("blob already exists")
    if if_match is not None and current_etag != if_match:
        raise PreconditionFailed(f"version mismatch: expected {if_match}, found {current_etag}")


class BlobStore:
    """Interface shared by all storage backends."""

    supports_conditional_writes = False

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        *,
        if_match: Optional[str] = None,
        if_none_match: bool = False,
    ) -> BlobMetadata:
        """Store ``data`` under ``key``, overwriting, and return its metadata."""
        raise NotImplementedError

    async def head(self, key: str) -> BlobMetadata:
        """Return metadata for ``key``; raise BlobNotFound if absent."""
        raise NotImplementedError

    async def list(self, prefix: str) -> List[BlobMetadata]:
        """Return metadata for every blob whose key starts with ``prefix``."""
        raise NotImplementedError

    async def read(self, blob: BlobMetadata) -> bytes:
        """Return the content of a blob previously returned by head/list."""
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    """Process-local store. Used for development and tests."""

    supports_conditional_writes = True

    def __init__(self, base_url: str = "memory:///"):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._blobs: Dict[str, Tuple[bytes, BlobMetadata]] = {}

    async def put(self, key, data, content_type, *, if_match=None, if_none_match=False):
        current = self._blobs.get(key)
        check_precondition(current[1].etag if current else None, if_match, if_none_match)
        meta = BlobMetadata(
            key=key,
            url=f"{self.base_url}{key}",
            uploaded_at=datetime.now(timezone.utc),
            size=len(data),
            etag=content_etag(data),
            content_type=content_type,
        )
        self._blobs[key] = (bytes(data), meta)
        return meta

    async def head(self, key):
        try:
            return self._blobs[key][1]
        except KeyError:
            raise BlobNotFound(key) from None

    async def list(self, prefix):
        return [meta for _, meta in self._blobs.values() if meta.key.startswith(prefix)]

    async def read(self, blob):
        try:
            return self._blobs[blob.key][0]
        except KeyError:
            raise BlobNotFound(blob.key) from None


class LocalBlobStore(BlobStore):
    """
    Filesystem store rooted at a directory.

    Keys map to relative paths. Writes go through a temporary file and an
    atomic rename. Conditional writes are serialised with an in-process lock,
    so they only protect against writers in the same process.
    """

    supports_conditional_writes = True

    def __init__(self, root, url_prefix: str = ""):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts or "\x00" in key:
            raise BlobStoreError(f"invalid key: {key!r}")
        return self.root.joinpath(*relative.parts)

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key}"

    def _metadata(
        self,
        key: str,
        path: Path,
        content_type: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> BlobMetadata:
        # stat only; the etag is filled in by callers holding the bytes
        stat = path.stat()
        return BlobMetadata(
            key=key,
            url=self.url_for(key),
            uploaded_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
            etag=etag,
            content_type=content_type,
        )

    def _current_etag(self, path: Path) -> Optional[str]:
        try:
            return content_etag(path.read_bytes())
        except FileNotFoundError:
            return None

    def _put_sync(self, key, data, content_type, if_match, if_none_match) -> BlobMetadata:
        path = self.path_for(key)
        with self._lock:
            if if_match is not None or if_none_match:
                check_precondition(self._current_etag(path), if_match, if_none_match)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "wb") as f:
                        f.write(data)
                    os.replace(tmp_name, path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except (OSError, ValueError) as e:
                raise BlobStoreError(f"failed to write {key}: {e}") from e
            return self._metadata(key, path, content_type, etag=content_etag(data))

    def _head_sync(self, key) -> BlobMetadata:
        path = self.path_for(key)
        try:
            if not path.is_file():
                raise BlobNotFound(key)
            return self._metadata(key, path)
        except FileNotFoundError:
            raise BlobNotFound(key) from None
        except (OSError, ValueError) as e:
            raise BlobStoreError(f"failed to stat {key}: {e}") from e

    def _list_sync(self, prefix) -> List[BlobMetadata]:
        if not self.root.is_dir():
            return []
        blobs = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                blobs.append(self._metadata(key, path))
        return blobs

    def _read_sync(self, key) -> bytes:
        try:
            return self.path_for(key).read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(key) from None
        except (OSError, ValueError) as e:
            raise BlobStoreError(f"failed to read {key}: {e}") from e

    async def put(self, key, data, content_type, *, if_match=None, if_none_match=False):
        return await run_in_threadpool(self._put_sync, key, data, content_type, if_match, if_none_match)

    async def head(self, key):
        return await run_in_threadpool(self._head_sync, key)

    async def list(self, prefix):
        return await run_in_threadpool(self._list_sync, prefix)

    async def read(self, blob):
        return await run_in_threadpool(self._read_sync, blob.key)


def _parse_timestamp(value: Any) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class VercelBlobStore(BlobStore):
    """
    Vercel Blob over its REST API.

    Objects are written public, without a random suffix, overwriting any
    previous object at the same pathname. The API offers no version tags.
    """

    API_VERSION = "7"

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str,
        api_url: str = DEFAULT_BLOB_API_URL,
        timeout: float = 10.0,
    ):
        self.client = client
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "authorization": f"Bearer {self.token}",
            "x-api-version": self.API_VERSION,
        }

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise BlobStoreTimeout(f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            logger.warning("Blob API %s %s failed: %s", method, url, e)
            raise BlobStoreError(f"{method} {url} failed: {e}") from e

    def _json(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            raise BlobStoreError(f"{action} returned a non-JSON response") from e
        if not isinstance(payload, dict):
            raise BlobStoreError(f"{action} returned an unexpected response")
        return payload

    def _metadata(self, payload: Any, key: Optional[str] = None) -> BlobMetadata:
        try:
            return BlobMetadata(
                key=payload.get("pathname") or key or "",
                url=payload["url"],
                uploaded_at=_parse_timestamp(payload.get("uploadedAt")),
                size=int(payload.get("size") or 0),
                content_type=payload.get("contentType"),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise BlobStoreError(f"malformed blob metadata for {key or payload!r}: {e!r}") from e

    async def put(self, key, data, content_type, *, if_match=None, if_none_match=False):
        if if_match is not None or if_none_match:
            raise BlobStoreError("conditional writes are not supported by Vercel Blob")
        headers = self._headers()
        headers.update({
            "x-content-type": content_type,
            "x-add-random-suffix": "0",
            "x-allow-overwrite": "1",
        })
        response = await self._request("PUT", f"{self.api_url}/{quote(key, safe='/')}", content=data, headers=headers)
        if not response.is_success:
            raise BlobStoreError(f"put {key} failed with status {response.status_code}")
        payload = self._json(response, f"put {key}")
        payload.setdefault("size", len(data))
        payload.setdefault("uploadedAt", datetime.now(timezone.utc).isoformat())
        return self._metadata(payload, key)

    async def head(self, key):
        response = await self._request("GET", self.api_url, params={"url": key}, headers=self._headers())
        if response.status_code == 404:
            raise BlobNotFound(key)
        if not response.is_success:
            raise BlobStoreError(f"head {key} failed with status {response.status_code}")
        return self._metadata(self._json(response, f"head {key}"), key)

    async def list(self, prefix):
        blobs: List[BlobMetadata] = []
        params = {"prefix": prefix, "limit": "1000"}
        while True:
            response = await self._request("GET", self.api_url, params=params, headers=self._headers())
            if not response.is_success:
                raise BlobStoreError(f"list {prefix} failed with status {response.status_code}")
            payload = self._json(response, f"list {prefix}")
            blobs.extend(self._metadata(item) for item in payload.get("blobs", []))
            cursor = payload.get("cursor")
            if not payload.get("hasMore") or not cursor:
                return blobs
            params = {**params, "cursor": cursor}

    async def read(self, blob):
        response = await self._request("GET", blob.url)
        if response.status_code == 404:
            raise BlobNotFound(blob.key)
        if not response.is_success:
            raise BlobStoreError(f"read {blob.key} failed with status {response.status_code}")
        return response.content
