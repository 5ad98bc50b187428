import json
import logging
import sqlite3
from typing import Any

from ...identity import ActingIdentity
from .form_schema import EducationRecord, PersonalInfo, normalize_education_level

logger = logging.getLogger(__name__)


class StudentRequiredError(ValueError):
    """Raised when a non-student user starts an application without naming a student."""


class StudentProfileMissingError(LookupError):
    """Raised when the target student row does not exist yet."""


def load_student(
    db: sqlite3.Connection,
    identity: ActingIdentity,
    target_student_id: str | None = None,
) -> dict[str, Any]:
    if identity.is_student:
        row = db.execute(
            "SELECT * FROM students WHERE profile_id = ?",
            (identity.user_id,),
        ).fetchone()
    else:
        if not target_student_id:
            raise StudentRequiredError("Select a student before submitting an application.")
        row = db.execute("SELECT * FROM students WHERE id = ?", (target_student_id,)).fetchone()

    if row is None:
        raise StudentProfileMissingError("Please complete your student profile first.")
    return dict(row)


def _street(raw_address: Any) -> str:
    if isinstance(raw_address, str):
        try:
            raw_address = json.loads(raw_address)
        except json.JSONDecodeError:
            return ""
    if isinstance(raw_address, dict):
        return str(raw_address.get("street") or "")
    return ""


def prefill_personal_info(student: dict[str, Any], identity: ActingIdentity) -> PersonalInfo:
    # The identity's own contact details only apply when the student is acting.
    fallback = identity if identity.is_student else None
    return PersonalInfo(
        full_name=student.get("legal_name") or (fallback.full_name if fallback else "") or "",
        email=student.get("contact_email") or (fallback.email if fallback else "") or "",
        phone=student.get("contact_phone") or (fallback.phone if fallback else "") or "",
        date_of_birth=student.get("date_of_birth") or "",
        nationality=student.get("nationality") or "",
        passport_number=student.get("passport_number") or "",
        current_country=student.get("current_country") or "",
        address=_street(student.get("address_json")),
    )


def load_education_history(db: sqlite3.Connection, student_id: str) -> list[EducationRecord]:
    rows = db.execute(
        """
        SELECT id, level, institution_name, country, start_date, end_date, gpa, grade_scale
        FROM education_records
        WHERE student_id = ?
        ORDER BY start_date DESC
        """,
        (student_id,),
    ).fetchall()
    return [
        EducationRecord(
            id=str(row["id"]),
            level=normalize_education_level(row["level"]),
            institution_name=row["institution_name"] or "",
            country=row["country"] or "",
            start_date=row["start_date"] or "",
            end_date=row["end_date"] or "",
            gpa="" if row["gpa"] is None else str(row["gpa"]),
            grade_scale=row["grade_scale"] or "",
        )
        for row in rows
    ]


def resolve_agent_id(db: sqlite3.Connection, identity: ActingIdentity) -> str | None:
    if identity.role != "agent":
        return None
    try:
        row = db.execute("SELECT id FROM agents WHERE profile_id = ?", (identity.user_id,)).fetchone()
    except sqlite3.Error:
        logger.exception("Failed to load agent id for user=%s", identity.user_id)
        return None
    return str(row["id"]) if row is not None else None


def find_assigned_counselor(db: sqlite3.Connection, student_id: str) -> str | None:
    row = db.execute(
        "SELECT counselor_id FROM student_assignments WHERE student_id = ? LIMIT 1",
        (student_id,),
    ).fetchone()
    if row is None or not row["counselor_id"]:
        return None
    return str(row["counselor_id"])


def load_program_summary(db: sqlite3.Connection, program_id: str) -> dict[str, Any] | None:
    row = db.execute(
        """
        SELECT p.id, p.name, u.name AS university_name
        FROM programs p
        LEFT JOIN universities u ON u.id = p.university_id
        WHERE p.id = ?
        """,
        (program_id,),
    ).fetchone()
    return dict(row) if row is not None else None
