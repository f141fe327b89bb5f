import sqlite3

import pytest

import ingest as ingest_module
from conftest import fake_metadata, make_wav, mp3_sized_buffer
from database import db
from errors import DatabaseError, ErrorType, IngestError, IngestTimeout, NetworkError, StorageError
from ingest import ingest, slugify, storage_key


def _track_rows():
    with db() as conn:
        return conn.execute("SELECT * FROM tracks").fetchall()


def test_storage_key_is_namespaced_and_sanitized():
    key = storage_key("My Song (live)!.mp3")

    assert key.startswith("music/")
    assert key.endswith("-My_Song__live__.mp3")
    assert storage_key("a.mp3") != storage_key("a.mp3")


@pytest.mark.parametrize(
    "text,expected",
    [("Hello World", "hello-world"), ("  --AC/DC--  ", "ac-dc"), ("Ünïcode", "n-code"), ("!!!", "")],
)
def test_slugify(text, expected):
    assert slugify(text) == expected


def test_successful_ingest_creates_published_track(db_path, storage, ledger, use_metadata):
    use_metadata(fake_metadata())
    buffer = mp3_sized_buffer()

    result = ingest(buffer, "song.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert result.success
    assert result.key in storage.objects
    stored = storage.objects[result.key]
    assert stored["content_type"] == "audio/mpeg"
    assert stored["metadata"]["original_name"] == "song.mp3"
    assert stored["metadata"]["title"] == "Test Song"
    assert stored["metadata"]["validation_warnings"] == "none"

    rows = _track_rows()
    assert len(rows) == 1
    track = rows[0]
    assert track["id"] == result.track_id
    assert track["duration"] == 180
    assert track["bitrate"] == 192000
    assert track["is_published"] == 1
    assert track["play_count"] == 0
    assert track["file_key"] == result.key
    assert track["file_url"] == storage.public_url(result.key)
    assert track["file_size"] == len(buffer)
    assert track["format"] == "mp3"
    assert track["slug"] == "test-song"
    assert track["year"] == 2020

    [attempt] = ledger.snapshot()
    assert attempt.status == "success"
    assert attempt.duration == 180
    assert attempt.file_size == len(buffer)

    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["validation"]["duration"] == 180
    assert payload["metadata"]["artist"] == "Test Artist"


def test_non_audio_mime_is_rejected_without_validation(db_path, storage, ledger, monkeypatch):
    def _should_not_run(*args, **kwargs):
        raise AssertionError("validator called")

    monkeypatch.setattr(ingest_module, "validate", _should_not_run)

    result = ingest(b"\x89PNG....", "cover.png", "image/png", storage=storage, ledger=ledger)

    assert not result.success
    assert result.error_type == "file_format"
    assert result.recommendations
    assert storage.objects == {}
    assert _track_rows() == []
    [attempt] = ledger.snapshot()
    assert attempt.status == "failed"
    assert attempt.error_type == "file_format"


def test_invalid_audio_is_classified_as_validation_failure(db_path, storage, ledger, use_metadata):
    use_metadata(fake_metadata(duration=0))

    result = ingest(b"\x00" * 1000, "silent.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert not result.success
    assert result.error_type == "audio_validation"
    assert result.error.startswith("Audio validation failed")
    assert result.recommendations[0] == "File rejected due to validation errors"
    assert storage.objects == {}


@pytest.mark.parametrize(
    "error,category",
    [
        (StorageError("Cloudflare R2 upload failed"), "cloudflare_r2"),
        (NetworkError("could not reach R2"), "network"),
        (IngestTimeout("timed out"), "timeout"),
        (RuntimeError("something odd"), "unknown"),
    ],
)
def test_storage_failures_are_categorised(db_path, storage, ledger, use_metadata, error, category):
    use_metadata(fake_metadata())
    storage.fail_put = error

    result = ingest(mp3_sized_buffer(), "song.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert not result.success
    assert result.error_type == category
    assert _track_rows() == []
    assert ledger.stats()["error_breakdown"] == [{"error_type": category, "count": 1, "percentage": 100}]


def test_database_failure_rolls_back_and_removes_object(db_path, storage, ledger, use_metadata, monkeypatch):
    use_metadata(fake_metadata(artist="Brand New Artist"))
    original = ingest_module._upsert_id
    calls = {"n": 0}

    def _failing_upsert(conn, *args):
        calls["n"] += 1
        if calls["n"] == 3:  # after artist and album, fail on the uploader
            raise sqlite3.IntegrityError("constraint failed")
        return original(conn, *args)

    monkeypatch.setattr(ingest_module, "_upsert_id", _failing_upsert)

    result = ingest(mp3_sized_buffer(), "song.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert not result.success
    assert result.error_type == "database"
    assert storage.objects == {}
    with db() as conn:
        assert conn.execute("SELECT COUNT(*) FROM artists").fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM albums").fetchone()[0] == 0
    assert _track_rows() == []


def test_transient_database_errors_are_retried(db_path, storage, ledger, use_metadata, monkeypatch):
    use_metadata(fake_metadata())
    original = ingest_module._persist_track
    attempts = {"n": 0}

    def _flaky(*args, **kwargs):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise DatabaseError("database is locked", transient=True)
        return original(*args, **kwargs)

    monkeypatch.setattr(ingest_module, "_persist_track", _flaky)

    result = ingest(mp3_sized_buffer(), "song.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert result.success
    assert attempts["n"] == 3


def test_permanent_database_errors_are_not_retried(db_path, storage, ledger, use_metadata, monkeypatch):
    use_metadata(fake_metadata())
    attempts = {"n": 0}

    def _broken(*args, **kwargs):
        attempts["n"] += 1
        raise DatabaseError("no such table: tracks")

    monkeypatch.setattr(ingest_module, "_persist_track", _broken)

    result = ingest(mp3_sized_buffer(), "song.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    assert result.error_type == "database"
    assert attempts["n"] == 1


def test_artist_reused_by_exact_name_and_album_scoped_by_artist(db_path, storage, ledger, use_metadata):
    use_metadata(fake_metadata(artist="Band", album="Greatest Hits"))
    ingest(mp3_sized_buffer(), "one.mp3", "audio/mpeg", storage=storage, ledger=ledger)
    ingest(mp3_sized_buffer(), "two.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    use_metadata(fake_metadata(artist="Other Band", album="Greatest Hits"))
    ingest(mp3_sized_buffer(), "three.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    use_metadata(fake_metadata(artist="band", album=None))
    ingest(mp3_sized_buffer(), "four.mp3", "audio/mpeg", storage=storage, ledger=ledger)

    with db() as conn:
        artists = [r["name"] for r in conn.execute("SELECT name FROM artists ORDER BY name")]
        albums = conn.execute("SELECT COUNT(*) FROM albums").fetchone()[0]
        users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        no_album = conn.execute("SELECT COUNT(*) FROM tracks WHERE album_id IS NULL").fetchone()[0]

    assert artists == ["Band", "Other Band", "band"]
    assert albums == 2
    assert users == 1
    assert no_album == 1
    assert len(_track_rows()) == 4


def test_untagged_file_uses_filename_defaults(db_path, storage, ledger):
    result = ingest(make_wav(seconds=2.0), "field recording.wav", "audio/wav", storage=storage, ledger=ledger)

    assert result.success
    [track] = _track_rows()
    assert track["title"] == "field recording"
    assert track["format"] == "wav"
    assert track["duration"] == 2
    assert track["album_id"] is None
    assert result.metadata["artist"] == "Unknown Artist"


def test_staging_file_removed_on_success_and_failure(db_path, storage, ledger, use_metadata, tmp_path):
    use_metadata(fake_metadata())
    ok_path = tmp_path / "ok.mp3"
    bad_path = tmp_path / "bad.png"
    ok_path.write_bytes(b"x")
    bad_path.write_bytes(b"x")

    ingest(mp3_sized_buffer(), "ok.mp3", "audio/mpeg", storage=storage, ledger=ledger, staging_path=str(ok_path))
    ingest(b"x", "bad.png", "image/png", storage=storage, ledger=ledger, staging_path=str(bad_path))

    assert not ok_path.exists()
    assert not bad_path.exists()


def test_missing_staging_file_does_not_change_outcome(db_path, storage, ledger, use_metadata, tmp_path):
    use_metadata(fake_metadata())

    result = ingest(
        mp3_sized_buffer(),
        "song.mp3",
        "audio/mpeg",
        storage=storage,
        ledger=ledger,
        staging_path=str(tmp_path / "already-gone.mp3"),
    )

    assert result.success


def _error_classes(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _error_classes(sub)


def test_every_advised_category_has_an_error_class():
    raised = {cls.error_type for cls in _error_classes(IngestError)} | {ErrorType.UNKNOWN}

    assert set(ingest_module.CATEGORY_RECOMMENDATIONS) <= raised
