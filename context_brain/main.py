from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import load_settings
from .identity_context import db as cdb
from .identity_context.router import contexts_router, intelligence_router
from .minter import IdentityMinter


# ----------------------------
# Environment & configuration
# ----------------------------

SETTINGS = load_settings()
DB_PATH = SETTINGS.db_path

logging.basicConfig(
    level=getattr(logging, SETTINGS.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("context_brain")


# ----------------------------
# Database helpers
# ----------------------------


def init_db() -> None:
    """
    Initialize the SQLite database with the context store tables.
    """
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    conn = cdb.connect(DB_PATH)
    conn.close()


# ----------------------------
# FastAPI app
# ----------------------------

app = FastAPI(
    title="Context Brain",
    version="1.0.0",
)

# Allow CORS from anywhere for now. Adjust in production if needed.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize the DB on startup
init_db()

app.state.db_path = DB_PATH
app.state.suspension_ttl_seconds = SETTINGS.suspension_ttl_seconds
app.state.minter = IdentityMinter(
    SETTINGS.chittyid_service_url,
    token=SETTINGS.chittyid_token,
    timeout=SETTINGS.chittyid_timeout,
    retry_after_seconds=SETTINGS.chittyid_retry_after_seconds,
)

if not SETTINGS.chittyid_token:
    logger.warning("CHITTY_ID_SERVICE_TOKEN is not set; minting will likely fall back to local identifiers")

logger.info("Context brain ready (db=%s, authority=%s)", DB_PATH, SETTINGS.chittyid_service_url)


# ----------------------------
# Health
# ----------------------------

health_router = APIRouter(prefix="/health", tags=["health"])


@health_router.get("/ping")
async def ping() -> Dict[str, Any]:
    return {"status": "ok", "message": "Context brain is alive"}


@health_router.get("/database")
def database_health() -> Dict[str, Any]:
    start = time.time()
    if not Path(DB_PATH).is_file():
        return {
            "status": "error",
            "message": f"Database file not found at {DB_PATH}",
            "duration_seconds": time.time() - start,
        }

    try:
        conn = sqlite3.connect(DB_PATH)
        try:
            conn.execute("SELECT 1")
            live = conn.execute(
                "SELECT COUNT(*) FROM context_entities WHERE status IN ('active','dormant')"
            ).fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as exc:
        logger.error("Database health check failed: %s", exc)
        return {
            "status": "error",
            "message": f"Database error: {exc}",
            "duration_seconds": time.time() - start,
        }

    return {
        "status": "ok",
        "path": DB_PATH,
        "live_contexts": int(live),
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "duration_seconds": time.time() - start,
    }


@app.get("/", include_in_schema=False)
async def root() -> Dict[str, Any]:
    return {
        "message": "Context brain is running",
        "identity_authority": SETTINGS.chittyid_service_url,
    }


# ----------------------------
# Mount routers
# ----------------------------

app.include_router(health_router)
app.include_router(contexts_router)
app.include_router(intelligence_router)
