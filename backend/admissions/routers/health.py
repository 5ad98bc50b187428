import sqlite3
from datetime import datetime, timezone

from fastapi import APIRouter

from ..db.database import get_db

router = APIRouter()


@router.get("/health")
def health_check():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/ready")
def readiness_check():
    conn = get_db()
    try:
        conn.execute("SELECT 1 FROM application_drafts LIMIT 1").fetchall()
        ready = True
    except sqlite3.Error:
        ready = False
    finally:
        conn.close()
    return {"ready": ready, "version": "0.1.0"}
