import sqlite3

from fastapi import APIRouter, Depends, HTTPException

from ..db.database import get_db
from ..engines.applications.draft_store import delete_draft, fetch_draft

router = APIRouter(prefix="/drafts", tags=["drafts"])


def db_conn():
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


@router.get("/{student_id}")
def get_draft(student_id: str, db: sqlite3.Connection = Depends(db_conn)):
    draft = fetch_draft(db, student_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    return draft


@router.delete("/{student_id}")
def discard_draft(student_id: str, db: sqlite3.Connection = Depends(db_conn)):
    deleted = delete_draft(db, student_id)
    return {"ok": True, "deleted": deleted}
