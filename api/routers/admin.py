import logging
import os

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import require_admin
from database import TABLES_IN_DELETE_ORDER, db
from dependencies import get_ledger, get_storage
from errors import IngestError, ObjectNotFound

logger = logging.getLogger(__name__)
router = APIRouter()

REPORT_LIMIT = 50
REPORT_FAILURE_LIMIT = 25


class BucketCleanup(BaseModel):
    files_to_delete: list[str] | None = None
    delete_all: bool = False


class DatabaseCleanup(BaseModel):
    confirm_cleanup: bool = False


@router.get("/admin/upload-report")
def upload_report(auth=Depends(require_admin), ledger=Depends(get_ledger)):
    """Attempt statistics plus the most recent successes (from the DB) and failures (from the ledger)."""
    with db() as conn:
        rows = conn.execute(
            """
            SELECT id, title, file_name, file_size, created_at
            FROM tracks
            WHERE is_published = 1
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (REPORT_LIMIT,),
        ).fetchall()

    stats = ledger.stats()

    recent = [
        {
            "id": row["id"],
            "title": row["title"],
            "filename": row["file_name"],
            "file_size": row["file_size"] or 0,
            "created_at": row["created_at"],
            "status": "success",
        }
        for row in rows
    ]
    failures = [a for a in ledger.snapshot() if a.status == "failed"][-REPORT_FAILURE_LIMIT:]
    recent.extend(
        {
            "id": attempt.id,
            "title": os.path.splitext(attempt.filename)[0],
            "filename": attempt.filename,
            "file_size": attempt.file_size or 0,
            "created_at": attempt.timestamp.isoformat(),
            "status": "failed",
            "error_type": attempt.error_type,
            "error_message": attempt.error_message,
        }
        for attempt in failures
    )
    recent.sort(key=lambda x: x["created_at"], reverse=True)

    return {
        "total_uploads": stats["total"],
        "successful_uploads": stats["success"],
        "failed_uploads": stats["failed"],
        "success_rate": stats["success_rate"],
        "error_breakdown": stats["error_breakdown"],
        "recent_uploads": recent[:REPORT_LIMIT],
    }


@router.delete("/admin/track/{track_id}")
def delete_track(track_id: str, auth=Depends(require_admin), storage=Depends(get_storage)):
    """Remove a track from the library and delete its stored object."""
    with db() as conn:
        row = conn.execute("SELECT file_key FROM tracks WHERE id=?", (track_id,)).fetchone()
        if not row:
            raise HTTPException(404, "Track not found")

        file_key = row["file_key"]

        conn.execute("DELETE FROM play_history WHERE track_id=?", (track_id,))
        conn.execute("DELETE FROM tracks WHERE id=?", (track_id,))

    try:
        storage.delete(file_key)
    except ObjectNotFound:
        logger.warning(f"Object already missing for track {track_id}: {file_key}")
    except IngestError as e:
        logger.error(f"Deleted track {track_id} but could not delete {file_key}: {e}")
        return {"ok": True, "object_deleted": False}

    logger.info(f"Deleted track: {track_id}")
    return {"ok": True, "object_deleted": True}


@router.get("/admin/bucket")
def list_bucket(auth=Depends(require_admin), storage=Depends(get_storage)):
    try:
        keys = storage.list()
    except IngestError as e:
        logger.error(f"Listing bucket failed: {e}")
        raise HTTPException(502, "Could not list stored files")
    return {"keys": keys, "count": len(keys)}


@router.post("/admin/cleanup-bucket")
def cleanup_bucket(req: BucketCleanup, auth=Depends(require_admin), storage=Depends(get_storage)):
    if not req.files_to_delete and not req.delete_all:
        raise HTTPException(400, "No files specified for deletion")

    if req.delete_all:
        try:
            keys = storage.list()
        except IngestError as e:
            logger.error(f"Listing bucket failed: {e}")
            raise HTTPException(502, "Could not list stored files")
        logger.info(f"Deleting ALL {len(keys)} objects from bucket")
    else:
        keys = req.files_to_delete

    deleted = 0
    errors = []
    for key in keys:
        try:
            storage.delete(key)
            deleted += 1
        except IngestError as e:
            errors.append(f"Failed to delete {key}: {e}")
            logger.error(f"Failed to delete {key}: {e}")

    message = f"Successfully deleted {deleted} files"
    if errors:
        message += f" with {len(errors)} errors"
    return {"success": True, "deleted_count": deleted, "errors": errors, "message": message}


@router.post("/admin/cleanup-database")
def cleanup_database(req: DatabaseCleanup, auth=Depends(require_admin)):
    if not req.confirm_cleanup:
        raise HTTPException(400, 'Send {"confirm_cleanup": true} to proceed with database cleanup')

    deleted_counts = {}
    with db() as conn:
        for table in TABLES_IN_DELETE_ORDER:
            deleted_counts[table] = conn.execute(f"DELETE FROM {table}").rowcount
    total = sum(deleted_counts.values())
    logger.warning(f"Database cleanup deleted {total} records: {deleted_counts}")
    return {
        "success": True,
        "message": f"Database cleanup completed. Deleted {total} total records.",
        "deleted_counts": deleted_counts,
        "total_deleted": total,
    }
