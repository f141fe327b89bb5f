import logging
import os
import secrets
from typing import Optional
from urllib.parse import urlencode

import requests
from fastapi import APIRouter, Cookie, HTTPException
from fastapi.responses import RedirectResponse

import auth

logger = logging.getLogger(__name__)
router = APIRouter()

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
STATE_COOKIE = "meuwsic_oauth_state"
REQUEST_TIMEOUT = 10


def _oauth_config() -> dict:
    client_id = os.environ.get("GOOGLE_CLIENT_ID", "")
    client_secret = os.environ.get("GOOGLE_CLIENT_SECRET", "")
    redirect_url = os.environ.get("OAUTH_REDIRECT_URL", "")
    if not (client_id and client_secret and redirect_url):
        raise HTTPException(503, "Google sign-in not configured")
    return {"client_id": client_id, "client_secret": client_secret, "redirect_url": redirect_url}


def fetch_google_email(code: str) -> Optional[str]:
    """Exchange an authorization code and return the verified account email."""
    cfg = _oauth_config()
    try:
        token_response = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": cfg["client_id"],
                "client_secret": cfg["client_secret"],
                "redirect_uri": cfg["redirect_url"],
                "grant_type": "authorization_code",
            },
            timeout=REQUEST_TIMEOUT,
        )
        token_response.raise_for_status()
        access_token = token_response.json()["access_token"]

        userinfo = requests.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=REQUEST_TIMEOUT,
        )
        userinfo.raise_for_status()
        info = userinfo.json()
    except (requests.RequestException, KeyError, ValueError) as e:
        logger.error(f"Google token exchange failed: {e}")
        raise HTTPException(502, "Could not complete Google sign-in")

    if not info.get("email_verified", False):
        return None
    return info.get("email")


@router.get("/auth/login")
def login():
    cfg = _oauth_config()
    state = secrets.token_urlsafe(16)
    query = urlencode(
        {
            "client_id": cfg["client_id"],
            "redirect_uri": cfg["redirect_url"],
            "response_type": "code",
            "scope": "openid email profile",
            "prompt": "select_account",
            "access_type": "offline",
            "state": state,
        }
    )
    response = RedirectResponse(f"{GOOGLE_AUTHORIZE_URL}?{query}")
    response.set_cookie(STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax")
    return response


@router.get("/auth/callback")
def callback(code: str, state: str, meuwsic_oauth_state: Optional[str] = Cookie(None)):
    if not meuwsic_oauth_state or not secrets.compare_digest(state, meuwsic_oauth_state):
        raise HTTPException(400, "Invalid OAuth state")

    email = fetch_google_email(code)
    if not auth.is_admin_identity(email):
        raise HTTPException(403, "Admin access required")

    session = auth.create_session(email)
    response = RedirectResponse("/admin", status_code=303)
    response.delete_cookie(STATE_COOKIE)
    response.set_cookie(
        auth.SESSION_COOKIE,
        session["token"],
        max_age=auth.SESSION_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=bool(os.environ.get("SERVER_HOSTNAME")),
    )
    return response


@router.get("/auth/session")
def current_session(meuwsic_session: Optional[str] = Cookie(None)):
    session = auth.get_session(meuwsic_session)
    if not session:
        raise HTTPException(401, "Not signed in")
    return session


@router.post("/auth/logout")
def logout(meuwsic_session: Optional[str] = Cookie(None)):
    auth.delete_session(meuwsic_session)
    logger.info("Admin logout")
    response = RedirectResponse("/", status_code=303)
    response.delete_cookie(auth.SESSION_COOKIE)
    return response
