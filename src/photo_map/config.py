"""
Settings, read from the environment and an optional ``.env`` file.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from starlette.config import Config
from starlette.datastructures import CommaSeparatedStrings

from .index import DEFAULT_INDEX_KEY
from .location import DEFAULT_GEOCODER_URL, DEFAULT_USER_AGENT
from .pipeline import DEFAULT_PHOTO_PREFIX
from .records import DEFAULT_KNOWN_UPLOADERS
from .storage import DEFAULT_BLOB_API_URL

STORAGE_BACKENDS = ("local", "memory", "blob")
WRITE_MODES = ("best-effort", "conditional")
READ_FAILURE_POLICIES = ("fail", "reset")

DEFAULT_BLOB_PUBLIC_HOST = ".public.blob.vercel-storage.com"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    storage: str = "local"
    data_dir: Path = Path("var")
    public_url_prefix: str = ""
    blob_token: Optional[str] = None
    blob_api_url: str = DEFAULT_BLOB_API_URL
    blob_public_host: str = DEFAULT_BLOB_PUBLIC_HOST
    index_key: str = DEFAULT_INDEX_KEY
    photo_prefix: str = DEFAULT_PHOTO_PREFIX
    # "conditional" turns index appends into compare-and-swap with retries
    write_mode: str = "best-effort"
    write_attempts: int = 5
    # "reset" starts a fresh collection when the index cannot be read
    index_read_failure: str = "fail"
    geocoder_url: str = DEFAULT_GEOCODER_URL
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout: float = 10.0
    known_uploaders: Tuple[str, ...] = DEFAULT_KNOWN_UPLOADERS
    log_level: str = "INFO"

    def __post_init__(self):
        _check_choice("PHOTO_MAP_STORAGE", self.storage, STORAGE_BACKENDS)
        _check_choice("PHOTO_MAP_WRITE_MODE", self.write_mode, WRITE_MODES)
        _check_choice("PHOTO_MAP_INDEX_READ_FAILURE", self.index_read_failure, READ_FAILURE_POLICIES)
        if self.storage == "blob" and not self.blob_token:
            raise ValueError("BLOB_READ_WRITE_TOKEN is required when PHOTO_MAP_STORAGE=blob")
        if self.write_attempts < 1:
            raise ValueError("PHOTO_MAP_WRITE_ATTEMPTS must be at least 1")
        if self.http_timeout <= 0:
            raise ValueError("PHOTO_MAP_HTTP_TIMEOUT must be positive")

    @property
    def conditional_writes(self) -> bool:
        return self.write_mode == "conditional"

    @property
    def reset_on_read_error(self) -> bool:
        return self.index_read_failure == "reset"


def _check_choice(name: str, value: str, choices: Tuple[str, ...]) -> None:
    if value not in choices:
        raise ValueError(f"Invalid {name}={value!r}, expected one of: {', '.join(choices)}")


def load_settings(env_file: Optional[str] = ".env", environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``environ`` (default: os.environ) and ``env_file``."""
    if env_file is not None and not os.path.isfile(env_file):
        env_file = None
    config = Config(env_file, environ=os.environ if environ is None else environ)

    return Settings(
        storage=config("PHOTO_MAP_STORAGE", default="local").strip().lower(),
        data_dir=config("PHOTO_MAP_DATA_DIR", cast=Path, default=Path("var")),
        public_url_prefix=config("PHOTO_MAP_PUBLIC_URL_PREFIX", default=""),
        blob_token=config("BLOB_READ_WRITE_TOKEN", default=None),
        blob_api_url=config("PHOTO_MAP_BLOB_API_URL", default=DEFAULT_BLOB_API_URL),
        blob_public_host=config("PHOTO_MAP_BLOB_PUBLIC_HOST", default=DEFAULT_BLOB_PUBLIC_HOST),
        index_key=config("PHOTO_MAP_INDEX_KEY", default=DEFAULT_INDEX_KEY),
        photo_prefix=config("PHOTO_MAP_PHOTO_PREFIX", default=DEFAULT_PHOTO_PREFIX),
        write_mode=config("PHOTO_MAP_WRITE_MODE", default="best-effort").strip().lower(),
        write_attempts=config("PHOTO_MAP_WRITE_ATTEMPTS", cast=int, default=5),
        index_read_failure=config("PHOTO_MAP_INDEX_READ_FAILURE", default="fail").strip().lower(),
        geocoder_url=config("PHOTO_MAP_GEOCODER_URL", default=DEFAULT_GEOCODER_URL),
        user_agent=config("PHOTO_MAP_USER_AGENT", default=DEFAULT_USER_AGENT),
        http_timeout=config("PHOTO_MAP_HTTP_TIMEOUT", cast=float, default=10.0),
        known_uploaders=tuple(
            config("PHOTO_MAP_KNOWN_UPLOADERS", cast=CommaSeparatedStrings, default=",".join(DEFAULT_KNOWN_UPLOADERS))
        ),
        log_level=config("LOG_LEVEL", default="INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
