"""
Starlette application exposing the photo upload API.

Routes:
- POST /api/upload      ingest a multipart photo upload, returns the record
- GET  /api/uploads     the full upload collection
- GET  /api/blob-image  same-origin proxy for public blob URLs
- GET  /health          liveness check
- /uploads/*            photos written by the local storage backend

Run with ``uvicorn photo_map.app:create_app --factory``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlparse

import httpx
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from .config import Settings, configure_logging, load_settings
from .errors import IngestionError, UpstreamTimeout
from .index import UploadIndex
from .location import LocationResolver, NominatimGeocoder
from .pipeline import DEFAULT_MIME_TYPE, ImageConverter, IngestionPipeline
from .storage import BlobStore, LocalBlobStore, MemoryBlobStore, VercelBlobStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings, client: httpx.AsyncClient) -> BlobStore:
    """Instantiate the storage backend named by ``settings.storage``."""
    if settings.storage == "blob":
        return VercelBlobStore(
            client,
            settings.blob_token,
            api_url=settings.blob_api_url,
            timeout=settings.http_timeout,
        )
    if settings.storage == "memory":
        return MemoryBlobStore()
    return LocalBlobStore(settings.data_dir, url_prefix=settings.public_url_prefix)


def build_pipeline(
    settings: Settings,
    client: httpx.AsyncClient,
    *,
    store: Optional[BlobStore] = None,
    geocoder: Optional[NominatimGeocoder] = None,
    converter: Optional[ImageConverter] = None,
) -> IngestionPipeline:
    """Wire store, index, geocoder and resolver into a pipeline."""
    if store is None:
        store = build_store(settings, client)
    if geocoder is None:
        geocoder = NominatimGeocoder(
            client,
            url=settings.geocoder_url,
            user_agent=settings.user_agent,
            timeout=settings.http_timeout,
        )
    index = UploadIndex(
        store,
        settings.index_key,
        conditional=settings.conditional_writes,
        max_attempts=settings.write_attempts,
        reset_on_read_error=settings.reset_on_read_error,
    )
    return IngestionPipeline(
        store,
        index,
        LocationResolver(geocoder),
        photo_prefix=settings.photo_prefix,
        known_uploaders=settings.known_uploaders,
        converter=converter,
    )


async def upload(request: Request) -> JSONResponse:
    """
    Ingest a photo upload.

    Expects multipart/form-data with ``uploader``, a ``photo`` file and either
    ``lat``/``lng`` or ``address``. Returns the stored record as JSON.
    """
    pipeline: IngestionPipeline = request.app.state.pipeline
    body = await request.body()
    record = await pipeline.ingest(body, request.headers.get("content-type", ""))
    return JSONResponse(record.to_dict())


async def list_uploads(request: Request) -> JSONResponse:
    """Return every upload record, oldest first."""
    pipeline: IngestionPipeline = request.app.state.pipeline
    return JSONResponse(await pipeline.index.load())


def is_allowed_blob_url(target: str, public_host: str) -> bool:
    parsed = urlparse(target)
    host = parsed.hostname or ""
    return parsed.scheme == "https" and host.endswith(public_host)


async def blob_image(request: Request) -> Response:
    """
    Proxy a public blob URL so the map can draw it from the same origin.

    Only https URLs on the configured blob host are fetched.
    """
    settings: Settings = request.app.state.settings
    client: httpx.AsyncClient = request.app.state.http_client

    target = request.query_params.get("url") or request.query_params.get("u")
    if not target:
        raise HTTPException(status_code=400, detail="Missing url")
    if not is_allowed_blob_url(target, settings.blob_public_host):
        raise HTTPException(status_code=400, detail="Invalid blob url")

    try:
        upstream = await client.get(target, timeout=settings.http_timeout)
    except httpx.TimeoutException as e:
        raise UpstreamTimeout("Blob fetch timed out") from e
    except httpx.HTTPError as e:
        logger.error("Blob proxy failed for %s: %s", target, e)
        return JSONResponse({"error": "Proxy failed"}, status_code=500)

    if not upstream.is_success:
        return JSONResponse({"error": "Blob fetch failed"}, status_code=upstream.status_code)

    return Response(
        upstream.content,
        media_type=upstream.headers.get("content-type", DEFAULT_MIME_TYPE),
        headers={"Cache-Control": "public, max-age=3600"},
    )


async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({"status": "ok"})


async def ingestion_error(request: Request, exc: IngestionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[BlobStore] = None,
    geocoder: Optional[NominatimGeocoder] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    converter: Optional[ImageConverter] = None,
) -> Starlette:
    """
    Build the application.

    Collaborators not passed in are created from ``settings``, which default
    to the process environment.
    """
    if settings is None:
        settings = load_settings()
    configure_logging(settings.log_level)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(follow_redirects=True, timeout=settings.http_timeout)
    pipeline = build_pipeline(settings, client, store=store, geocoder=geocoder, converter=converter)

    @asynccontextmanager
    async def lifespan(app):
        yield
        if owns_client:
            await client.aclose()

    routes = [
        Route("/api/upload", upload, methods=["POST"]),
        Route("/api/uploads", list_uploads, methods=["GET"]),
        Route("/api/blob-image", blob_image, methods=["GET"]),
        Route("/health", health_check, methods=["GET"]),
    ]
    if isinstance(pipeline.store, LocalBlobStore):
        photo_path = settings.photo_prefix.strip("/")
        photo_root = pipeline.store.root / photo_path
        photo_root.mkdir(parents=True, exist_ok=True)
        routes.append(Mount(f"/{photo_path}", app=StaticFiles(directory=photo_root), name="uploads"))

    app = Starlette(
        routes=routes,
        exception_handlers={
            IngestionError: ingestion_error,
            HTTPException: http_error,
        },
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.http_client = client
    return app
