from typing import Any, List, Optional

import httpx
import pytest

from photo_map.location import NominatimGeocoder
from photo_map.storage import MemoryBlobStore

TIMES_SQUARE = {"lat": "40.7580", "lon": "-73.9855", "display_name": "Times Square"}


@pytest.fixture
def anyio_backend():
    return "asyncio"


class GeocoderStub:
    """Canned Nominatim responses; records every request it receives."""

    def __init__(self, results: Optional[Any] = None, status_code: int = 200):
        self.results = [TIMES_SQUARE] if results is None else results
        self.status_code = status_code
        self.error: Optional[Exception] = None
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.results)


@pytest.fixture
def geocoder_stub():
    return GeocoderStub()


@pytest.fixture
def geocoder(geocoder_stub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(geocoder_stub.handler))
    return NominatimGeocoder(client, user_agent="photo-map-tests/1.0")


@pytest.fixture
def memory_store():
    return MemoryBlobStore()
