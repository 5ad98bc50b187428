import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from .form_schema import STEP_COUNT, ApplicationForm, to_valid_uuid_or_null

JSON_COLUMNS = {"form_data"}
DRAFT_COLUMNS = "id, student_id, tenant_id, program_id, form_data, last_step, created_at, updated_at"


@dataclass
class DraftPayload:
    student_id: str
    tenant_id: str
    program_id: str | None
    last_step: int
    form_data: ApplicationForm


def _row_to_draft(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    for col in JSON_COLUMNS:
        raw = item.get(col)
        if isinstance(raw, str):
            try:
                item[col] = json.loads(raw)
            except json.JSONDecodeError:
                item[col] = None
    return item


def fetch_draft(db: sqlite3.Connection, student_id: str) -> dict[str, Any] | None:
    row = db.execute(
        f"SELECT {DRAFT_COLUMNS} FROM application_drafts WHERE student_id = ?",
        (student_id,),
    ).fetchone()
    if row is None:
        return None
    return _row_to_draft(row)


def upsert_draft(db: sqlite3.Connection, payload: DraftPayload) -> dict[str, Any]:
    """Write the single draft row for ``payload.student_id``.

    Program ids that are not UUIDs (sample/fallback programs) are stored as
    NULL. Backend errors propagate to the caller.
    """
    if not 1 <= int(payload.last_step) <= STEP_COUNT:
        raise ValueError(f"last_step must be between 1 and {STEP_COUNT}")

    now = datetime.now(timezone.utc).isoformat()
    try:
        db.execute(
            """
            INSERT INTO application_drafts (
                id,
                student_id,
                tenant_id,
                program_id,
                form_data,
                last_step,
                created_at,
                updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(student_id) DO UPDATE SET
                tenant_id = excluded.tenant_id,
                program_id = excluded.program_id,
                form_data = excluded.form_data,
                last_step = excluded.last_step,
                updated_at = excluded.updated_at
            """,
            (
                str(uuid4()),
                payload.student_id,
                payload.tenant_id,
                to_valid_uuid_or_null(payload.program_id),
                json.dumps(payload.form_data.to_draft_data()),
                int(payload.last_step),
                now,
                now,
            ),
        )
        db.commit()
    except sqlite3.Error:
        db.rollback()
        raise

    draft = fetch_draft(db, payload.student_id)
    if draft is None:
        raise LookupError(f"Draft for student {payload.student_id} vanished after upsert")
    return draft


def delete_draft(db: sqlite3.Connection, student_id: str) -> bool:
    result = db.execute("DELETE FROM application_drafts WHERE student_id = ?", (student_id,))
    db.commit()
    return result.rowcount > 0
