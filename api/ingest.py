import logging
import os
import re
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import audio
from database import db
from errors import AudioValidationError, DatabaseError, ErrorType, FileFormatError, IngestError
from ledger import AttemptLedger
from models import AudioMetadata, TrackRecord, ValidationResult
from validator import recommendations, validate

logger = logging.getLogger(__name__)

KEY_PREFIX = "music"
SYSTEM_USER_EMAIL = os.environ.get("SYSTEM_USER_EMAIL", "system@meuwsic.app")
DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
RETRY_BASE_DELAY = 0.5

# Advice for failures that never reach the validator's own recommendations
CATEGORY_RECOMMENDATIONS = {
    ErrorType.FILE_FORMAT: ["Only audio files are accepted (MP3, FLAC, OGG, M4A, WAV)"],
    ErrorType.CLOUDFLARE_R2: ["Storage rejected the file - try again later"],
    ErrorType.NETWORK: ["Storage could not be reached - check connectivity and retry"],
    ErrorType.TIMEOUT: ["The upload timed out - retry, or upload a smaller file"],
    ErrorType.DATABASE: ["The file was not saved to the library - retry the upload"],
    ErrorType.UNKNOWN: ["Retry the upload; contact an admin if it keeps failing"],
}


@dataclass
class IngestResult:
    filename: str
    success: bool
    key: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None
    track_id: Optional[str] = None
    validation: Optional[ValidationResult] = None
    metadata: dict = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        if not self.success:
            return {
                "filename": self.filename,
                "success": False,
                "error": self.error,
                "error_type": self.error_type,
                "recommendations": self.recommendations,
            }
        v = self.validation
        return {
            "filename": self.filename,
            "success": True,
            "key": self.key,
            "url": self.url,
            "size": self.size,
            "track_id": self.track_id,
            "validation": {
                "is_valid": v.is_valid,
                "duration": v.duration,
                "actual_duration": v.actual_duration,
                "warnings": list(v.warnings),
                "recommendations": self.recommendations,
            },
            "metadata": self.metadata,
        }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def storage_key(filename: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", filename) or "unknown"
    return f"{KEY_PREFIX}/{uuid.uuid4()}-{sanitized}"


def _title_from_filename(filename: str) -> str:
    return os.path.splitext(filename)[0] or "Unknown Title"


def _read_tags(buffer: bytes, filename: str) -> Optional[AudioMetadata]:
    try:
        return audio.extract_metadata(buffer, filename)
    except Exception as e:
        logger.warning(f"Could not extract tags from {filename!r}: {e}")
        return None


def _with_retry(operation, what: str):
    """Run `operation`, retrying transient database errors with exponential backoff."""
    for attempt in range(DB_RETRY_ATTEMPTS):
        try:
            return operation()
        except DatabaseError as e:
            if not e.transient or attempt == DB_RETRY_ATTEMPTS - 1:
                raise
            delay = RETRY_BASE_DELAY * 2**attempt
            logger.warning(f"{what} failed ({e}), retrying in {delay:.1f}s")
            time.sleep(delay)


def _upsert_id(conn, insert_sql: str, insert_args: tuple, select_sql: str, select_args: tuple) -> str:
    conn.execute(insert_sql, insert_args)
    return conn.execute(select_sql, select_args).fetchone()["id"]


def _persist_track(
    track: dict,
    artist_name: str,
    album_title: Optional[str],
    album_year: Optional[int],
    genre: Optional[str] = None,
) -> TrackRecord:
    """Resolve artist, album and uploader and insert the track in one transaction."""
    try:
        with db() as conn:
            now = _now()
            artist_id = _upsert_id(
                conn,
                "INSERT INTO artists (id, name, slug, created_at) VALUES (?, ?, ?, ?) ON CONFLICT(name) DO NOTHING",
                (str(uuid.uuid4()), artist_name, slugify(artist_name), now),
                "SELECT id FROM artists WHERE name=?",
                (artist_name,),
            )

            album_id = None
            if album_title:
                album_id = _upsert_id(
                    conn,
                    """
                    INSERT INTO albums (id, title, slug, artist_id, release_year, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(artist_id, title) DO NOTHING
                    """,
                    (str(uuid.uuid4()), album_title, slugify(album_title), artist_id, album_year, now),
                    "SELECT id FROM albums WHERE artist_id=? AND title=?",
                    (artist_id, album_title),
                )

            uploader_id = _upsert_id(
                conn,
                """
                INSERT INTO users (id, email, username, display_name, is_verified, created_at)
                VALUES (?, ?, 'system', 'System User', 1, ?)
                ON CONFLICT(email) DO NOTHING
                """,
                (str(uuid.uuid4()), SYSTEM_USER_EMAIL, now),
                "SELECT id FROM users WHERE email=?",
                (SYSTEM_USER_EMAIL,),
            )

            record = TrackRecord(
                id=str(uuid.uuid4()),
                artist_id=artist_id,
                album_id=album_id,
                uploaded_by=uploader_id,
                is_published=True,
                play_count=0,
                **track,
            )
            conn.execute(
                """
                INSERT INTO tracks (id, title, slug, artist_id, album_id, uploaded_by,
                                    file_key, file_url, file_name, file_size, duration,
                                    bitrate, sample_rate, format, track_number, year, genre,
                                    is_published, play_count, created_at, published_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.title,
                    record.slug,
                    record.artist_id,
                    record.album_id,
                    record.uploaded_by,
                    record.file_key,
                    record.file_url,
                    record.file_name,
                    record.file_size,
                    record.duration,
                    record.bitrate,
                    record.sample_rate,
                    record.format,
                    record.track_number,
                    record.year,
                    genre,
                    int(record.is_published),
                    record.play_count,
                    now,
                    now,
                ),
            )
            return record
    except sqlite3.Error as e:
        message = str(e)
        transient = isinstance(e, sqlite3.OperationalError) and ("locked" in message or "busy" in message)
        raise DatabaseError(f"Database write failed: {message}", transient=transient) from e


def _discard_staging(path: Optional[str]):
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove staging file {path}: {e}")


def _store_and_record(buffer, filename, mime_type, validation, storage):
    tags = _read_tags(buffer, filename)
    title = (tags and tags.title) or _title_from_filename(filename)
    artist = (tags and tags.artist) or "Unknown Artist"
    album = tags.album if tags else None
    extension = os.path.splitext(filename)[1].lstrip(".").lower()

    key = storage_key(filename)
    stored = storage.put(
        key,
        buffer,
        mime_type,
        {
            "original_name": filename,
            "uploaded_at": _now(),
            "title": title,
            "artist": artist,
            "album": album or "Unknown Album",
            "duration": validation.duration,
            "validated_duration": validation.actual_duration,
            "bitrate": validation.bitrate or 0,
            "sample_rate": validation.sample_rate or 0,
            "validation_warnings": "; ".join(validation.warnings) or "none",
        },
    )

    track = {
        "title": title,
        "slug": slugify(title) or "untitled",
        "file_key": key,
        "file_url": stored["url"],
        "file_name": filename,
        "file_size": len(buffer),
        "duration": validation.duration,
        "bitrate": validation.bitrate,
        "sample_rate": validation.sample_rate,
        "format": extension or (validation.format or "mp3").lower(),
        "track_number": tags.track_number if tags else None,
        "year": tags.year if tags else None,
    }
    try:
        record = _with_retry(
            lambda: _persist_track(track, artist, album, track["year"], tags.genre if tags else None),
            f"Saving track {filename!r}",
        )
    except IngestError:
        try:
            storage.delete(key)
        except Exception as cleanup_error:
            logger.warning(f"Could not remove orphaned object {key}: {cleanup_error}")
        raise

    metadata = {
        "title": title,
        "artist": artist,
        "album": album or "Unknown Album",
        "duration": validation.duration,
        "genre": (tags.genre if tags else None) or "Unknown",
        "year": track["year"],
        "track": track["track_number"],
        "bitrate": validation.bitrate,
        "sample_rate": validation.sample_rate,
    }
    return stored, record, metadata


def ingest(
    buffer: bytes,
    filename: str,
    mime_type: Optional[str],
    *,
    storage,
    ledger: AttemptLedger,
    staging_path: Optional[str] = None,
) -> IngestResult:
    """Validate, store and catalogue one uploaded file.

    Never raises for per-file problems: the outcome is recorded in the ledger
    and returned as an IngestResult.
    """
    filename = filename or "unknown"
    validation = None
    advice: list[str] = []
    try:
        if not mime_type or not mime_type.startswith("audio/"):
            raise FileFormatError(f"Invalid file type {mime_type or 'unknown'}. Only audio files are allowed.")

        validation = validate(buffer, filename)
        advice = recommendations(validation)
        if not validation.is_valid:
            raise AudioValidationError(f"Audio validation failed: {', '.join(validation.errors)}")

        stored, record, metadata = _store_and_record(buffer, filename, mime_type, validation, storage)

    except Exception as e:
        error_type = e.error_type if isinstance(e, IngestError) else ErrorType.UNKNOWN
        message = str(e) or type(e).__name__
        logger.error(f"Upload failed for {filename!r} [{error_type.value}]: {message}")
        ledger.record(
            filename=filename,
            status="failed",
            error_type=error_type.value,
            error_message=message,
            file_size=len(buffer),
        )
        return IngestResult(
            filename=filename,
            success=False,
            validation=validation,
            recommendations=advice or CATEGORY_RECOMMENDATIONS.get(error_type, []),
            error=message,
            error_type=error_type.value,
        )
    finally:
        _discard_staging(staging_path)

    ledger.record(
        filename=filename,
        status="success",
        file_size=len(buffer),
        duration=validation.duration,
    )
    logger.info(f"Ingested {filename!r} as track {record.id} ({stored['key']}, {validation.duration}s)")
    return IngestResult(
        filename=filename,
        success=True,
        key=stored["key"],
        url=stored["url"],
        size=len(buffer),
        track_id=record.id,
        validation=validation,
        metadata=metadata,
        recommendations=advice,
    )
