import logging
import os
import tempfile
import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from auth import require_admin
from dependencies import get_ledger, get_storage
from ingest import ingest

logger = logging.getLogger(__name__)
router = APIRouter()

STAGING_DIR = os.environ.get("STAGING_DIR", os.path.join(tempfile.gettempdir(), "meuwsic-staging"))
MAX_FILE_SIZE = int(os.environ.get("MAX_FILE_SIZE", str(50 * 1024 * 1024)))  # 50MB
MAX_TOTAL_SIZE = int(os.environ.get("MAX_TOTAL_SIZE", str(200 * 1024 * 1024)))  # 200MB
CHUNK_SIZE = 65536


def _discard(paths: list[str]):
    for path in paths:
        if os.path.exists(path):
            os.unlink(path)


async def _stage(files: list[UploadFile]) -> list[tuple[UploadFile, str, int]]:
    """Copy every part to disk, enforcing the per-file and aggregate caps before any ingest."""
    os.makedirs(STAGING_DIR, exist_ok=True)
    staged = []
    total = 0
    try:
        for upload in files:
            ext = os.path.splitext(upload.filename or "")[1].lower()
            dest = os.path.join(STAGING_DIR, f"{uuid.uuid4()}{ext}")
            staged.append((upload, dest, 0))
            size = 0
            with open(dest, "wb") as f_out:
                while chunk := await upload.read(CHUNK_SIZE):
                    size += len(chunk)
                    total += len(chunk)
                    if size > MAX_FILE_SIZE:
                        raise HTTPException(
                            413, f"File {upload.filename} too large (max {MAX_FILE_SIZE // (1024 * 1024)}MB)"
                        )
                    if total > MAX_TOTAL_SIZE:
                        raise HTTPException(
                            413, f"Upload too large (max {MAX_TOTAL_SIZE // (1024 * 1024)}MB in total)"
                        )
                    f_out.write(chunk)
            staged[-1] = (upload, dest, size)
    except BaseException:
        _discard([path for _, path, _ in staged])
        raise
    return staged


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


@router.post("/upload")
async def upload_files(
    files: list[UploadFile] = File(...),
    storage=Depends(get_storage),
    ledger=Depends(get_ledger),
    admin=Depends(require_admin),
):
    staged = await _stage(files)

    results = []
    handed_off = 0
    try:
        for upload, path, _ in staged:
            buffer = await run_in_threadpool(_read, path)
            # ingest removes its own staging file from here on
            handed_off += 1
            result = await run_in_threadpool(
                ingest,
                buffer,
                upload.filename or "unknown",
                upload.content_type,
                storage=storage,
                ledger=ledger,
                staging_path=path,
            )
            results.append(result.to_dict())
    finally:
        _discard([path for _, path, _ in staged[handed_off:]])

    successful = sum(1 for r in results if r["success"])
    failed = len(results) - successful
    message = f"Uploaded {successful} files successfully"
    if failed:
        message += f", {failed} failed"
    logger.info(f"Upload batch finished: {successful} ok, {failed} failed")

    return {
        "success": failed == 0,
        "message": message,
        "results": results,
        "summary": {"total": len(results), "successful": successful, "failed": failed},
    }
