import re
from datetime import datetime, timedelta, timezone

import pytest

from photo_map.errors import BadRequest, CorruptedIndex, IngestionError, StorageError, UpstreamTimeout, WriteConflict
from photo_map.records import UploadRecord, canonical_uploader, generate_record_id, utc_timestamp


@pytest.mark.parametrize(
    "name,expected",
    [("ben", "Ben"), ("  JAKE\t", "Jake"), ("Priya", "Priya"), ("  priya ", "priya"), ("", "")],
)
def test_canonical_uploader(name, expected):
    assert canonical_uploader(name) == expected


def test_canonical_uploader_custom_identities():
    assert canonical_uploader("PRIYA", known=("Priya",)) == "Priya"
    assert canonical_uploader("ben", known=("Priya",)) == "ben"


def test_generate_record_id():
    record_id = generate_record_id(now=1700000000.5)

    assert re.fullmatch(r"1700000000500-[0-9a-z]{6}", record_id)
    assert generate_record_id() != generate_record_id()


def test_utc_timestamp():
    moment = datetime(2026, 10, 19, 8, 30, 5, 123456, tzinfo=timezone(timedelta(hours=-4)))

    assert utc_timestamp(moment) == "2026-10-19T12:30:05.123Z"


def test_record_to_dict_uses_index_field_names():
    record = UploadRecord(
        id="1-abcdef",
        uploader="Ben",
        lat=40.7,
        lng=-74.0,
        address="",
        image="/uploads/1_a.jpg",
        original_path="/home/ben/a.jpg",
        created_at="2026-10-19T12:00:00.000Z",
    )

    assert record.to_dict() == {
        "id": "1-abcdef",
        "uploader": "Ben",
        "lat": 40.7,
        "lng": -74.0,
        "address": "",
        "image": "/uploads/1_a.jpg",
        "originalPath": "/home/ben/a.jpg",
        "createdAt": "2026-10-19T12:00:00.000Z",
    }


@pytest.mark.parametrize(
    "error,status",
    [
        (IngestionError("x"), 500),
        (BadRequest("x"), 400),
        (StorageError("x"), 500),
        (CorruptedIndex("x"), 500),
        (WriteConflict("x"), 500),
        (UpstreamTimeout("x"), 504),
    ],
)
def test_error_status(error, status):
    assert error.status_code == status


def test_error_to_dict():
    assert BadRequest("missing boundary").to_dict() == {"error": "missing boundary"}
    assert StorageError("Failed to save photo", detail="disk full").to_dict() == {
        "error": "Failed to save photo",
        "detail": "disk full",
    }
