import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from ...clients.local_store import LEGACY_DRAFT_STORAGE_KEY, LocalStorage
from ...clients.storage import APPLICATION_DOCUMENTS_BUCKET, ObjectStorage
from ...config import APPLICATION_SOURCE
from ...identity import ActingIdentity
from .document_reuse import DocumentReuseResolver, insert_application_document
from .draft_store import delete_draft
from .error_classifier import missing_optional_column
from .form_schema import DOCUMENT_SLOTS, ApplicationForm, DocumentUpload, is_valid_uuid
from .student_context import find_assigned_counselor, load_program_summary

logger = logging.getLogger(__name__)

# Attribution columns; any the deployed schema lacks are dropped from the insert.
OPTIONAL_ATTRIBUTION_COLUMNS = ("application_source", "submission_channel", "submitted_by_agent", "agent_id")


class SubmissionValidationError(ValueError):
    """Raised before any write when the form cannot become an application."""


@dataclass
class SubmissionResult:
    application: dict[str, Any]
    documents: list[dict[str, Any]] = field(default_factory=list)
    dropped_columns: list[str] = field(default_factory=list)
    notified_counselor_id: str | None = None

    @property
    def application_id(self) -> str:
        return str(self.application["id"])

    @property
    def tracking_id(self) -> str:
        return self.application_id[:8].upper()


def _insert_row(db: sqlite3.Connection, table: str, payload: dict[str, Any]) -> dict[str, Any]:
    columns = list(payload.keys())
    placeholders = ", ".join("?" for _ in columns)
    db.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        [payload[col] for col in columns],
    )
    db.commit()
    row = db.execute(f"SELECT * FROM {table} WHERE id = ?", (payload["id"],)).fetchone()
    return dict(row)


def insert_application(
    db: sqlite3.Connection,
    base: dict[str, Any],
    optional: dict[str, Any],
) -> tuple[dict[str, Any], list[str]]:
    """Insert an application, stripping optional columns the schema lacks.

    Every attempt reuses the same row id, so at most one row is created.
    Returns the row and the optional columns that had to be dropped.
    """
    payload = {**base, **optional}
    remaining = list(optional.keys())
    dropped: list[str] = []
    while True:
        try:
            return _insert_row(db, "applications", payload), dropped
        except sqlite3.Error as err:
            db.rollback()
            column = missing_optional_column(err, remaining)
            if column is None:
                raise
            logger.warning("applications.%s is missing from the schema; retrying without it", column)
            remaining.remove(column)
            payload.pop(column, None)
            dropped.append(column)


def _upload_path(application_id: str, slot: str, upload: DocumentUpload) -> str:
    extension = upload.extension or "bin"
    return f"{application_id}/{slot}_{int(time.time() * 1000)}.{extension}"


async def _store_fresh_upload(
    db: sqlite3.Connection,
    storage: ObjectStorage,
    application_id: str,
    slot: str,
    upload: DocumentUpload,
) -> dict[str, Any]:
    path = _upload_path(application_id, slot, upload)
    await asyncio.to_thread(
        storage.upload,
        APPLICATION_DOCUMENTS_BUCKET,
        path,
        upload.data,
        content_type=upload.content_type,
    )
    return insert_application_document(
        db,
        application_id=application_id,
        document_type=slot,
        storage_path=path,
        file_size=upload.size,
        mime_type=upload.content_type,
    )


def _notify_counselor(
    db: sqlite3.Connection,
    *,
    counselor_id: str,
    tenant_id: str,
    program: dict[str, Any] | None,
) -> None:
    program_name = (program or {}).get("name")
    metadata = {
        "program_id": (program or {}).get("id"),
        "program_name": program_name,
        "university_name": (program or {}).get("university_name"),
    }
    db.execute(
        """
        INSERT INTO notifications (id, tenant_id, user_id, type, title, content, metadata_json, action_url, created_at)
        VALUES (?, ?, ?, 'general', ?, ?, ?, ?, ?)
        """,
        (
            str(uuid4()),
            tenant_id,
            counselor_id,
            "New Application Submitted",
            f"A new application has been submitted for {program_name or 'a program'}.",
            json.dumps(metadata),
            "/dashboard/applications",
            datetime.now(timezone.utc).isoformat(),
        ),
    )
    db.commit()


async def submit_application(
    db: sqlite3.Connection,
    *,
    identity: ActingIdentity | None,
    student_id: str | None,
    tenant_id: str,
    form: ApplicationForm,
    storage: ObjectStorage,
    reuse_resolver: DocumentReuseResolver | None = None,
    agent_id: str | None = None,
    local_storage: LocalStorage | None = None,
) -> SubmissionResult:
    program_id = form.program_selection.program_id
    if not student_id or not program_id:
        raise SubmissionValidationError("Missing required information")
    if not is_valid_uuid(program_id):
        raise SubmissionValidationError("Please select a valid program before submitting")

    submitted_by_agent = identity is not None and identity.role == "agent" and bool(agent_id)
    base = {
        "id": str(uuid4()),
        "student_id": student_id,
        "program_id": program_id,
        "intake_year": form.program_selection.intake_year,
        "intake_month": form.program_selection.intake_month,
        "intake_id": form.program_selection.intake_id or None,
        "status": "submitted",
        "notes": form.notes or None,
        "tenant_id": tenant_id,
        "submitted_at": datetime.now(timezone.utc).isoformat(),
    }
    optional = {
        "agent_id": agent_id if submitted_by_agent else None,
        "submitted_by_agent": 1 if submitted_by_agent else 0,
        "submission_channel": "agent_portal" if submitted_by_agent else "student_portal",
        "application_source": APPLICATION_SOURCE,
    }
    application, dropped = insert_application(
        db,
        base,
        {column: optional[column] for column in OPTIONAL_ATTRIBUTION_COLUMNS},
    )
    result = SubmissionResult(application=application, dropped_columns=dropped)
    application_id = result.application_id

    for slot in DOCUMENT_SLOTS:
        upload = form.documents.get(slot)
        try:
            if upload is not None:
                document = await _store_fresh_upload(db, storage, application_id, slot, upload)
            elif reuse_resolver is not None:
                document = await reuse_resolver.reuse_into(db, application_id, slot)
            else:
                document = None
        except Exception:
            logger.exception("Failed to attach %s to application %s", slot, application_id)
            continue
        if document is not None:
            result.documents.append(document)

    program = None
    try:
        program = load_program_summary(db, program_id)
    except sqlite3.Error:
        logger.exception("Failed to load program %s for notification", program_id)

    try:
        counselor_id = find_assigned_counselor(db, student_id)
        if counselor_id:
            _notify_counselor(db, counselor_id=counselor_id, tenant_id=tenant_id, program=program)
            result.notified_counselor_id = counselor_id
    except sqlite3.Error:
        logger.exception("Failed to notify counselor about application %s", application_id)

    try:
        delete_draft(db, student_id)
        if local_storage is not None:
            local_storage.remove_item(LEGACY_DRAFT_STORAGE_KEY)
    except (sqlite3.Error, OSError):
        logger.exception("Failed to clear draft after submitting application %s", application_id)

    logger.info(
        "Application %s submitted for student=%s (documents=%d)",
        application_id,
        student_id,
        len(result.documents),
    )
    return result
