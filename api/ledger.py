import threading
import uuid
from collections import Counter, deque
from datetime import datetime, timezone

from models import UploadAttempt

DEFAULT_MAX_ATTEMPTS = 1000


class AttemptLedger:
    """Bounded, process-lifetime record of recent upload attempts.

    Only the newest `maxlen` attempts are kept; the oldest are evicted first.
    Not a source of truth for successful uploads, which live in the tracks table.
    """

    def __init__(self, maxlen: int = DEFAULT_MAX_ATTEMPTS):
        self._attempts: deque[UploadAttempt] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def record(
        self,
        filename: str,
        status: str,
        error_type: str | None = None,
        error_message: str | None = None,
        file_size: int | None = None,
        duration: int | None = None,
    ) -> UploadAttempt:
        attempt = UploadAttempt(
            id=str(uuid.uuid4()),
            filename=filename,
            timestamp=datetime.now(timezone.utc),
            status=status,
            error_type=error_type,
            error_message=error_message,
            file_size=file_size,
            duration=duration,
        )
        with self._lock:
            self._attempts.append(attempt)
        return attempt

    def snapshot(self, limit: int | None = None) -> list[UploadAttempt]:
        """Most recent attempts, oldest first."""
        with self._lock:
            attempts = list(self._attempts)
        if limit is not None:
            attempts = attempts[-limit:] if limit > 0 else []
        return attempts

    def stats(self) -> dict:
        attempts = self.snapshot()
        total = len(attempts)
        success = sum(1 for a in attempts if a.status == "success")
        failed = sum(1 for a in attempts if a.status == "failed")

        counts = Counter(a.error_type for a in attempts if a.status == "failed" and a.error_type)
        breakdown = [
            {
                "error_type": error_type,
                "count": count,
                "percentage": round(count / failed * 100) if failed else 0,
            }
            for error_type, count in counts.items()
        ]
        breakdown.sort(key=lambda x: x["count"], reverse=True)

        return {
            "total": total,
            "success": success,
            "failed": failed,
            "success_rate": round(success / total * 100) if total else 0,
            "error_breakdown": breakdown,
        }
