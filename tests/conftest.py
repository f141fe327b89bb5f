from __future__ import annotations

import io
import wave
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

import auth
import database
import ingest
from errors import ObjectNotFound, StorageError
from ledger import AttemptLedger
from main import app
from models import AudioMetadata
from storage import ObjectInfo, StoredObject

ADMIN_TOKEN = "test-admin-token"


class FakeStorage:
    """In-memory blob store with the same surface as R2Storage."""

    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.fail_put: Exception | None = None
        self.fail_delete: Exception | None = None
        self.get_calls: list[tuple[str, tuple[int, int] | None]] = []

    def public_url(self, key: str) -> str:
        return f"https://cdn.example.test/{key}"

    def put(self, key, data, content_type, metadata=None):
        if self.fail_put is not None:
            raise self.fail_put
        self.objects[key] = {"data": bytes(data), "content_type": content_type, "metadata": dict(metadata or {})}
        return {"key": key, "url": self.public_url(key)}

    def stat(self, key):
        if key not in self.objects:
            raise ObjectNotFound(f"Object not found: {key}")
        obj = self.objects[key]
        return ObjectInfo(size=len(obj["data"]), content_type=obj["content_type"])

    def get(self, key, byte_range=None):
        self.get_calls.append((key, byte_range))
        if key not in self.objects:
            raise ObjectNotFound(f"Object not found: {key}")
        obj = self.objects[key]
        data = obj["data"]
        if byte_range is not None:
            data = data[byte_range[0] : byte_range[1] + 1]
        return StoredObject(body=iter([data]), content_length=len(data), content_type=obj["content_type"])

    def list(self, prefix=None):
        return [k for k in self.objects if not prefix or k.startswith(prefix)]

    def delete(self, key):
        if self.fail_delete is not None:
            raise self.fail_delete
        if key not in self.objects:
            raise StorageError(f"Cloudflare R2 delete failed for {key}")
        del self.objects[key]


def make_wav(seconds: float = 2.0, rate: int = 44100, channels: int = 2, width: int = 2) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(channels)
        w.setsampwidth(width)
        w.setframerate(rate)
        w.writeframes(b"\x00" * int(seconds * rate) * channels * width)
    return buf.getvalue()


def fake_metadata(**overrides) -> AudioMetadata:
    values = {
        "format": "MP3",
        "duration": 180.0,
        "bitrate": 192000,
        "sample_rate": 44100,
        "title": "Test Song",
        "artist": "Test Artist",
        "album": "Test Album",
        "track_number": 1,
        "year": 2020,
        "genre": "Rock",
    }
    values.update(overrides)
    return AudioMetadata(**values)


def mp3_sized_buffer(duration: float = 180.0, bitrate: int = 192000) -> bytes:
    return b"\xff" * int(duration * bitrate / 8)


@pytest.fixture()
def db_path(tmp_path, monkeypatch) -> str:
    path = str(tmp_path / "meuwsic.db")
    monkeypatch.setattr(database, "DB_PATH", path)
    database.init_db()
    return path


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def ledger() -> AttemptLedger:
    return AttemptLedger()


@pytest.fixture(autouse=True)
def _no_retry_delay(monkeypatch):
    monkeypatch.setattr(ingest, "RETRY_BASE_DELAY", 0)


@pytest.fixture()
def use_metadata(monkeypatch):
    """Replace the mutagen-backed extractor with a canned result."""

    def _install(metadata: AudioMetadata | None = None, error: Exception | None = None):
        def _extract(buffer, filename=None):
            if error is not None:
                raise error
            return metadata

        monkeypatch.setattr("audio.extract_metadata", _extract)

    return _install


@pytest.fixture()
def client(db_path, storage, tmp_path, monkeypatch) -> Iterator[TestClient]:
    monkeypatch.setattr(auth, "ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setattr("routers.upload.STAGING_DIR", str(tmp_path / "staging"))
    app.state.storage = storage
    with TestClient(app) as test_client:
        yield test_client
    app.state.storage = None


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
