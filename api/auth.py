import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Cookie, Header, HTTPException

from database import db

logger = logging.getLogger(__name__)

SESSION_COOKIE = "meuwsic_session"
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", str(2 * 60 * 60)))
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
ADMIN_EMAILS = os.environ.get("ADMIN_EMAILS", "")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def admin_emails() -> set[str]:
    return {e.strip().lower() for e in ADMIN_EMAILS.split(",") if e.strip()}


def is_admin_identity(email: Optional[str]) -> bool:
    """Allow/deny an identity asserted by the OAuth provider."""
    if not email:
        return False
    allowed = email.strip().lower() in admin_emails()
    if allowed:
        logger.info(f"Admin access granted to: {email}")
    else:
        logger.warning(f"Admin access denied to: {email}")
    return allowed


def create_session(email: str) -> dict:
    token = secrets.token_urlsafe(32)
    issued_at = _now().isoformat()
    with db() as conn:
        conn.execute(
            "INSERT INTO sessions (token, email, is_admin, issued_at) VALUES (?, ?, 1, ?)",
            (token, email, issued_at),
        )
    return {"token": token, "email": email, "is_admin": True, "issued_at": issued_at}


def get_session(token: Optional[str]) -> Optional[dict]:
    """Return the session for `token`, dropping it once it is past SESSION_MAX_AGE."""
    if not token:
        return None
    with db() as conn:
        row = conn.execute(
            "SELECT token, email, is_admin, issued_at FROM sessions WHERE token=?",
            (token,),
        ).fetchone()
        if not row:
            return None
        issued_at = datetime.fromisoformat(row["issued_at"])
        expires_at = issued_at + timedelta(seconds=SESSION_MAX_AGE)
        if _now() >= expires_at:
            conn.execute("DELETE FROM sessions WHERE token=?", (token,))
            logger.info(f"Session for {row['email']} expired")
            return None
    return {
        "email": row["email"],
        "is_admin": bool(row["is_admin"]),
        "issued_at": row["issued_at"],
        "expires_at": expires_at.isoformat(),
    }


def delete_session(token: Optional[str]):
    if not token:
        return
    with db() as conn:
        conn.execute("DELETE FROM sessions WHERE token=?", (token,))


def require_admin(
    meuwsic_session: Optional[str] = Cookie(None),
    x_admin_token: Optional[str] = Header(None),
):
    if ADMIN_TOKEN and x_admin_token and hmac.compare_digest(x_admin_token, ADMIN_TOKEN):
        return {"email": None, "is_admin": True, "via": "token"}
    session = get_session(meuwsic_session)
    if not session or not session["is_admin"]:
        raise HTTPException(401, "Admin session required")
    return session
