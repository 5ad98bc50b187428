import sqlite3
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from ..db.database import get_db

router = APIRouter(prefix="/applications", tags=["applications"])


def db_conn():
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


def _row_to_application(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["tracking_id"] = str(item["id"])[:8].upper()
    if "submitted_by_agent" in item:
        item["submitted_by_agent"] = bool(item["submitted_by_agent"])
    return item


@router.get("")
def list_applications(
    student_id: str = Query(...),
    tenant_id: str | None = Query(default=None),
    db: sqlite3.Connection = Depends(db_conn),
):
    query = """
        SELECT a.*, p.name AS program_name, u.name AS university_name
        FROM applications a
        LEFT JOIN programs p ON p.id = a.program_id
        LEFT JOIN universities u ON u.id = p.university_id
        WHERE a.student_id = ?
    """
    params: list[Any] = [student_id]
    if tenant_id:
        query += " AND a.tenant_id = ?"
        params.append(tenant_id)
    query += " ORDER BY a.submitted_at DESC, a.created_at DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_application(row) for row in rows]


@router.get("/{application_id}")
def get_application(application_id: str, db: sqlite3.Connection = Depends(db_conn)):
    row = db.execute(
        """
        SELECT a.*, p.name AS program_name, u.name AS university_name
        FROM applications a
        LEFT JOIN programs p ON p.id = a.program_id
        LEFT JOIN universities u ON u.id = p.university_id
        WHERE a.id = ?
        """,
        (application_id,),
    ).fetchone()
    if row is None:
        raise HTTPException(status_code=404, detail="Application not found")

    documents = db.execute(
        """
        SELECT id, document_type, storage_path, file_size, mime_type, uploaded_at
        FROM application_documents
        WHERE application_id = ?
        ORDER BY uploaded_at ASC
        """,
        (application_id,),
    ).fetchall()
    return {**_row_to_application(row), "documents": [dict(doc) for doc in documents]}
