import logging
import os
import time
from contextlib import asynccontextmanager

from database import db, init_db
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from ledger import AttemptLedger
from routers import admin, audio, login, tracks, upload
from storage import R2Storage

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

SLOW_PING_MS = 2000


@asynccontextmanager
async def lifespan(app: FastAPI):
    _app_name = os.getenv("APP_NAME", "Meuwsic")
    logger.info("Starting up %s API", _app_name)
    init_db()
    app.state.ledger = AttemptLedger()
    if getattr(app.state, "storage", None) is None:
        app.state.storage = R2Storage.from_env()
    yield
    logger.info("Shutting down %s API", _app_name)


app = FastAPI(title=os.getenv("APP_NAME", "Meuwsic") + " API", lifespan=lifespan)

_hostname = os.environ.get("SERVER_HOSTNAME", "")
_origins = [f"https://{_hostname}"] if _hostname else ["http://localhost", "http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "POST", "DELETE"],
    allow_headers=["Content-Type", "Range", "X-Admin-Token"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

app.include_router(upload.router)
app.include_router(tracks.router)
app.include_router(audio.router)
app.include_router(admin.router)
app.include_router(login.router)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/database/ping")
def database_ping():
    """Round-trip the database; a slow answer usually means it was idle."""
    start = time.monotonic()
    try:
        with db() as conn:
            conn.execute("SELECT 1").fetchone()
    except Exception as e:
        elapsed = round((time.monotonic() - start) * 1000)
        logger.error(f"Database ping failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "response_time_ms": elapsed, "message": "Database connection failed"},
        )
    elapsed = round((time.monotonic() - start) * 1000)
    was_asleep = elapsed > SLOW_PING_MS
    if was_asleep:
        logger.info(f"Database woke up slowly ({elapsed}ms)")
    return {"status": "active", "response_time_ms": elapsed, "was_asleep": was_asleep}
