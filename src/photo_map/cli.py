"""
Command line entry point.

Usage:
    photo-map add --uploader Ben --lat 40.7128 --lng -74.0060 --photo ~/pics/bagel.jpg
    photo-map add --uploader Jake --address "350 5th Ave" --photo ./skyline.heic
    photo-map serve --port 3000
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import uvicorn

from .app import build_pipeline, create_app
from .config import Settings, configure_logging, load_settings
from .errors import IngestionError
from .records import UploadRecord


async def add_upload(settings: Settings, uploader: str, photo_path: Path, fields: Dict[str, str]) -> UploadRecord:
    """Store a local photo and append its record, as the upload endpoint would."""
    async with httpx.AsyncClient(follow_redirects=True, timeout=settings.http_timeout) as client:
        pipeline = build_pipeline(settings, client)
        return await pipeline.submit(
            uploader,
            photo_path.name,
            photo_path.read_bytes(),
            fields,
            original_path=str(photo_path),
        )


def run_add(args: argparse.Namespace, settings: Settings) -> int:
    photo_path = Path(args.photo).expanduser().resolve()
    if not photo_path.is_file():
        print(f"Photo not found at {photo_path}", file=sys.stderr)
        return 1

    fields = {}
    if args.lat is not None:
        fields["lat"] = args.lat
    if args.lng is not None:
        fields["lng"] = args.lng
    if args.address:
        fields["address"] = args.address

    try:
        record = asyncio.run(add_upload(settings, args.uploader, photo_path, fields))
    except IngestionError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if e.detail:
            print(f"       {e.detail}", file=sys.stderr)
        return 1

    print(f"Added upload for {record.uploader} at ({record.lat}, {record.lng}) -> {record.image}")
    return 0


def run_serve(args: argparse.Namespace, settings: Settings) -> int:
    uvicorn.run(
        create_app(settings),
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photo-map",
        description="Photo map upload ingestion",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Settings file to read in addition to the environment (default: .env)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add", help="Add a photo from the local filesystem")
    add.add_argument("--uploader", "-u", required=True, help="Who took the photo")
    add.add_argument("--photo", "--path", "-p", required=True, help="Path to the image file")
    add.add_argument("--lat", "--latitude", help="Latitude in degrees")
    add.add_argument("--lng", "--lon", "--longitude", help="Longitude in degrees")
    add.add_argument("--address", "-a", help="Street address, geocoded when no coordinates are given")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "3000")),
        help="Port to listen on (default: $PORT or 3000)",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "add" and (args.lat is None or args.lng is None) and not args.address:
        parser.error("pass --lat and --lng, or --address")

    try:
        settings = load_settings(args.env_file)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    configure_logging(settings.log_level)

    if args.command == "add":
        sys.exit(run_add(args, settings))
    sys.exit(run_serve(args, settings))


if __name__ == "__main__":
    main()
