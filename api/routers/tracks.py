import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException

from database import db

logger = logging.getLogger(__name__)
router = APIRouter()

TRACK_SELECT = """
    SELECT t.id, t.title, t.slug, t.file_name, t.file_url, t.duration, t.file_size,
           t.format, t.bitrate, t.sample_rate, t.year, t.track_number, t.play_count,
           t.created_at,
           ar.id AS artist_id, ar.name AS artist_name,
           al.id AS album_id, al.title AS album_title, al.release_year AS album_year
    FROM tracks t
    LEFT JOIN artists ar ON t.artist_id = ar.id
    LEFT JOIN albums al ON t.album_id = al.id
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _track_row_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "title": row["title"],
        "slug": row["slug"],
        "file_name": row["file_name"],
        "file_url": row["file_url"],
        "duration": row["duration"],
        "file_size": row["file_size"],
        "format": row["format"],
        "bitrate": row["bitrate"],
        "sample_rate": row["sample_rate"],
        "year": row["year"],
        "track_number": row["track_number"],
        "play_count": row["play_count"],
        "created_at": row["created_at"],
        "artist": {"id": row["artist_id"], "name": row["artist_name"]},
        "album": (
            {"id": row["album_id"], "title": row["album_title"], "release_year": row["album_year"]}
            if row["album_id"]
            else None
        ),
    }


@router.get("/tracks")
def list_tracks():
    """All published tracks, newest first."""
    with db() as conn:
        rows = conn.execute(TRACK_SELECT + " WHERE t.is_published = 1 ORDER BY t.created_at DESC").fetchall()
    tracks = [_track_row_to_dict(r) for r in rows]
    return {"success": True, "tracks": tracks, "count": len(tracks)}


@router.get("/tracks/{track_id}")
def get_track(track_id: str):
    with db() as conn:
        row = conn.execute(TRACK_SELECT + " WHERE t.id = ?", (track_id,)).fetchone()
    if not row:
        raise HTTPException(404, "Track not found")
    return _track_row_to_dict(row)


@router.post("/tracks/{track_id}/play")
def track_played(track_id: str):
    """Called by the player when a track starts. Logs to play_history."""
    with db() as conn:
        row = conn.execute("SELECT id FROM tracks WHERE id=?", (track_id,)).fetchone()
        if not row:
            logger.warning(f"play called with unknown track_id: {track_id}")
            return {"ok": False, "error": "unknown track"}

        conn.execute(
            "INSERT INTO play_history (track_id, played_at) VALUES (?, ?)",
            (track_id, _now()),
        )
        conn.execute("UPDATE tracks SET play_count = play_count + 1 WHERE id=?", (track_id,))

    logger.info(f"play logged: {track_id}")
    return {"ok": True}
