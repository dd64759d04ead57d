import json

import pytest

from photo_map import cli

pytestmark = pytest.mark.usefixtures("local_env")


@pytest.fixture
def local_env(tmp_path, monkeypatch):
    for name in ("PHOTO_MAP_STORAGE", "PHOTO_MAP_DATA_DIR", "PHOTO_MAP_WRITE_MODE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PHOTO_MAP_STORAGE", "local")
    monkeypatch.setenv("PHOTO_MAP_DATA_DIR", str(tmp_path / "data-root"))
    monkeypatch.setenv("PHOTO_MAP_GEOCODER_URL", "http://127.0.0.1:9/search")
    monkeypatch.chdir(tmp_path)
    return tmp_path / "data-root"


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "pics" / "bagel shop.jpg"
    path.parent.mkdir()
    path.write_bytes(b"\xff\xd8bagel\xff\xd9")
    return path


def run(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def test_add_with_coordinates(local_env, photo, capsys):
    code = run(["add", "--uploader", "ben", "--lat", "40.7128", "--lng", "-74.0060", "--photo", str(photo)])

    assert code == 0
    out = capsys.readouterr().out
    assert out.startswith("Added upload for Ben at (40.7128, -74.006) -> /uploads/")

    (record,) = json.loads((local_env / "data" / "uploads.json").read_text())
    assert record["uploader"] == "Ben"
    assert record["originalPath"] == str(photo.resolve())
    assert record["image"].endswith("_bagel_shop.jpg")
    assert (local_env / record["image"].lstrip("/")).read_bytes() == photo.read_bytes()


def test_add_aliases(local_env, photo):
    code = run(["add", "-u", "Jake", "--latitude", "40.7", "--longitude", "-74.0", "-p", str(photo)])

    assert code == 0
    (record,) = json.loads((local_env / "data" / "uploads.json").read_text())
    assert record["uploader"] == "Jake"


def test_add_appends(local_env, photo):
    for uploader in ("Ben", "Jake"):
        assert run(["add", "-u", uploader, "--lat", "40.7", "--lon", "-74.0", "--path", str(photo)]) == 0

    records = json.loads((local_env / "data" / "uploads.json").read_text())
    assert [r["uploader"] for r in records] == ["Ben", "Jake"]


def test_add_requires_location(photo, capsys):
    assert run(["add", "-u", "Ben", "-p", str(photo), "--lat", "40.7"]) == 2
    assert "pass --lat and --lng, or --address" in capsys.readouterr().err


def test_add_missing_photo(tmp_path, capsys):
    code = run(["add", "-u", "Ben", "--lat", "40.7", "--lng", "-74.0", "-p", str(tmp_path / "nope.jpg")])

    assert code == 1
    assert "Photo not found" in capsys.readouterr().err


def test_add_geocoding_failure(local_env, photo, capsys):
    code = run(["add", "-u", "Ben", "--address", "Times Square", "-p", str(photo)])

    assert code == 1
    assert "Error: geocoding failed" in capsys.readouterr().err
    assert not (local_env / "data" / "uploads.json").exists()


def test_invalid_configuration(photo, monkeypatch, capsys):
    monkeypatch.setenv("PHOTO_MAP_STORAGE", "ftp")

    assert run(["add", "-u", "Ben", "--lat", "1", "--lng", "2", "-p", str(photo)]) == 1
    assert "Invalid configuration" in capsys.readouterr().err


def test_env_file(tmp_path, photo, monkeypatch):
    other = tmp_path / "from-env-file"
    env_file = tmp_path / "settings.env"
    env_file.write_text(f"PHOTO_MAP_DATA_DIR={other}\n")
    monkeypatch.delenv("PHOTO_MAP_DATA_DIR")

    assert run(["--env-file", str(env_file), "add", "-u", "Ben", "--lat", "40.7", "--lng", "-74", "-p", str(photo)]) == 0
    assert (other / "data" / "uploads.json").exists()


def test_serve(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    assert run(["serve", "--host", "0.0.0.0", "--port", "8123"]) == 0

    ((app, kwargs),) = calls
    assert kwargs == {"host": "0.0.0.0", "port": 8123, "log_level": "info"}
    assert app.state.settings.storage == "local"
