import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from dependencies import get_storage
from errors import IngestError, ObjectNotFound

logger = logging.getLogger(__name__)
router = APIRouter()

CACHE_CONTROL = "public, max-age=31536000"  # 1 year
RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range(header: str, total: int) -> tuple[int, int]:
    """Parse a single `bytes=` range into an inclusive (start, end) within `total`.

    Raises HTTPException(416) when the range is malformed or unsatisfiable.
    """
    unsatisfiable = HTTPException(416, "Requested range not satisfiable", headers={"Content-Range": f"bytes */{total}"})
    match = RANGE_PATTERN.match(header.strip())
    if not match or match.groups() == ("", ""):
        raise unsatisfiable

    first, last = match.groups()
    if first == "":
        # suffix range: the last N bytes
        length = int(last)
        if length == 0 or total == 0:
            raise unsatisfiable
        return max(total - length, 0), total - 1

    start = int(first)
    end = int(last) if last else total - 1
    if start >= total or end < start:
        raise unsatisfiable
    return start, min(end, total - 1)


@router.api_route("/audio/{key:path}", methods=["GET", "HEAD"])
def stream_audio(
    key: str,
    request: Request,
    range_header: Optional[str] = Header(None, alias="Range"),
    storage=Depends(get_storage),
):
    """Serve a stored object, honouring single byte ranges for seeking."""
    if not key:
        raise HTTPException(400, "Invalid path")

    try:
        info = storage.stat(key)
        headers = {"Accept-Ranges": "bytes", "Cache-Control": CACHE_CONTROL}
        byte_range = None
        status_code = 200
        headers["Content-Length"] = str(info.size)
        if range_header:
            start, end = parse_range(range_header, info.size)
            byte_range = (start, end)
            headers["Content-Range"] = f"bytes {start}-{end}/{info.size}"
            headers["Content-Length"] = str(end - start + 1)
            status_code = 206

        if request.method == "HEAD":
            return Response(status_code=status_code, media_type=info.content_type, headers=headers)
        obj = storage.get(key, byte_range)
    except ObjectNotFound:
        raise HTTPException(404, "File not found")
    except IngestError as e:
        logger.error(f"Error serving audio file {key}: {e}")
        raise HTTPException(500, "Failed to serve audio file")

    return StreamingResponse(obj.body, status_code=status_code, media_type=obj.content_type, headers=headers)
