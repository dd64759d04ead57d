"""
Upload records as stored in the shared index.
"""

import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

DEFAULT_KNOWN_UPLOADERS = ("Ben", "Jake")

_ID_ALPHABET = string.digits + string.ascii_lowercase


@dataclass(frozen=True)
class UploadRecord:
    """A single photo upload. Never mutated once appended to the index."""
    id: str
    uploader: str
    lat: float
    lng: float
    address: str
    image: str
    original_path: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON object stored in the index."""
        return {
            "id": self.id,
            "uploader": self.uploader,
            "lat": self.lat,
            "lng": self.lng,
            "address": self.address,
            "image": self.image,
            "originalPath": self.original_path,
            "createdAt": self.created_at,
        }


def canonical_uploader(name: str, known: Iterable[str] = DEFAULT_KNOWN_UPLOADERS) -> str:
    """
    Canonicalize an uploader name.

    Known identities match case-insensitively and come back in their
    canonical spelling; anything else is returned trimmed, case preserved.
    """
    trimmed = (name or "").strip()
    lowered = trimmed.lower()
    for identity in known:
        if identity.lower() == lowered:
            return identity
    return trimmed


def epoch_millis(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def generate_record_id(now: Optional[float] = None) -> str:
    """
    Return ``<epoch-millis>-<6 base36 chars>``.

    Collisions are unlikely but possible; the index does not deduplicate.
    """
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(6))
    return f"{epoch_millis(now)}-{suffix}"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, ``Z`` suffixed."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
