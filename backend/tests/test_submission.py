import asyncio
import json
import sys
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from conftest import seed_world

from admissions.clients.local_store import LEGACY_DRAFT_STORAGE_KEY
from admissions.clients.storage import APPLICATION_DOCUMENTS_BUCKET, StorageError
from admissions.db.database import get_db
from admissions.db.schema import init_db
from admissions.engines.applications.document_reuse import DocumentReuseResolver
from admissions.engines.applications.draft_store import DraftPayload, fetch_draft, upsert_draft
from admissions.engines.applications.form_schema import DocumentUpload, new_application_form
from admissions.engines.applications.submission import (
    OPTIONAL_ATTRIBUTION_COLUMNS,
    SubmissionValidationError,
    submit_application,
)
from admissions.identity import ActingIdentity


def _student_identity(ids) -> ActingIdentity:
    return ActingIdentity(user_id=ids.student_profile, role="student", tenant_id=ids.tenant)


def _submit(conn, ids, form, storage, **kwargs):
    kwargs.setdefault("identity", _student_identity(ids))
    kwargs.setdefault("student_id", ids.student)
    return asyncio.run(
        submit_application(conn, tenant_id=ids.tenant, form=form, storage=storage, **kwargs)
    )


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_invalid_program_id_is_rejected_before_any_write(seeded_db, ids, storage):
    conn = get_db(seeded_db)
    try:
        with pytest.raises(SubmissionValidationError, match="valid program"):
            _submit(conn, ids, new_application_form("sample-program-1"), storage)
        with pytest.raises(SubmissionValidationError, match="Missing required information"):
            _submit(conn, ids, new_application_form(ids.program), storage, student_id=None)
        assert _count(conn, "applications") == 0
    finally:
        conn.close()


def test_submission_attaches_uploads_and_reused_documents(seeded_db, ids, storage, local_storage, student_document):
    student_document(document_id="doc-passport", document_type="Passport", file_name="passport scan.pdf")
    form = new_application_form(ids.program)
    form.program_selection.intake_year = 2027
    form.program_selection.intake_month = 9
    form.documents["transcript"] = DocumentUpload(
        file_name="transcript.PDF", content_type="application/pdf", data=b"%PDF-1.4 transcript"
    )
    local_storage.set_item(LEGACY_DRAFT_STORAGE_KEY, '{"currentStep": 5}')

    conn = get_db(seeded_db)
    try:
        upsert_draft(
            conn,
            DraftPayload(student_id=ids.student, tenant_id=ids.tenant, program_id=ids.program, last_step=5, form_data=form),
        )
        resolver = DocumentReuseResolver.load(conn, ids.student, storage)
        result = _submit(conn, ids, form, storage, reuse_resolver=resolver, local_storage=local_storage)

        application = dict(conn.execute("SELECT * FROM applications").fetchone())
        notification = dict(conn.execute("SELECT * FROM notifications").fetchone())
        draft = fetch_draft(conn, ids.student)
    finally:
        conn.close()

    assert result.tracking_id == result.application_id[:8].upper()
    assert application["status"] == "submitted"
    assert application["intake_month"] == 9
    assert application["application_source"] == "UniDoxia"
    assert application["submission_channel"] == "student_portal"
    assert application["submitted_by_agent"] == 0
    assert application["agent_id"] is None
    assert result.dropped_columns == []

    by_type = {doc["document_type"]: doc for doc in result.documents}
    assert set(by_type) == {"transcript", "passport"}
    assert by_type["transcript"]["storage_path"].startswith(f"{result.application_id}/transcript_")
    assert by_type["transcript"]["storage_path"].endswith(".pdf")
    assert by_type["passport"]["storage_path"] == f"{result.application_id}/passport_passport_scan.pdf"
    assert storage.download(APPLICATION_DOCUMENTS_BUCKET, by_type["passport"]["storage_path"]) == b"%PDF-1.4 student copy"
    assert storage.exists(APPLICATION_DOCUMENTS_BUCKET, by_type["transcript"]["storage_path"])

    assert result.notified_counselor_id == ids.counselor_profile
    assert notification["user_id"] == ids.counselor_profile
    assert json.loads(notification["metadata_json"])["program_name"] == "MSc Data Science"

    assert draft is None
    assert local_storage.get_item(LEGACY_DRAFT_STORAGE_KEY) is None


def test_submission_succeeds_when_attribution_columns_are_missing(tmp_path, ids, storage):
    db_path = tmp_path / "unmigrated.db"
    init_db(db_path, with_attribution_columns=False)
    seed_world(db_path)

    conn = get_db(db_path)
    try:
        result = _submit(conn, ids, new_application_form(ids.program), storage)
        count = _count(conn, "applications")
        stored_id = conn.execute("SELECT id FROM applications").fetchone()["id"]
    finally:
        conn.close()

    assert count == 1
    assert stored_id == result.application_id
    assert set(result.dropped_columns) == set(OPTIONAL_ATTRIBUTION_COLUMNS)


def test_submission_drops_only_the_missing_source_column(tmp_path, ids, storage):
    db_path = tmp_path / "partly_migrated.db"
    init_db(db_path, with_attribution_columns=False)
    seed_world(db_path)
    conn = get_db(db_path)
    try:
        conn.execute("ALTER TABLE applications ADD COLUMN submitted_by_agent INTEGER DEFAULT 0")
        conn.execute("ALTER TABLE applications ADD COLUMN submission_channel TEXT")
        conn.execute("ALTER TABLE applications ADD COLUMN agent_id TEXT REFERENCES agents(id)")
        conn.commit()

        result = _submit(conn, ids, new_application_form(ids.program), storage)
        row = conn.execute("SELECT submission_channel, submitted_by_agent FROM applications").fetchone()
        count = _count(conn, "applications")
    finally:
        conn.close()

    assert count == 1
    assert result.dropped_columns == ["application_source"]
    assert result.application["submission_channel"] == "student_portal"
    assert row["submission_channel"] == "student_portal"
    assert row["submitted_by_agent"] == 0

def test_agent_submission_is_attributed_to_the_agent(seeded_db, ids, storage):
    identity = ActingIdentity(user_id=ids.agent_profile, role="agent", tenant_id=ids.tenant)
    conn = get_db(seeded_db)
    try:
        result = _submit(conn, ids, new_application_form(ids.program), storage, identity=identity, agent_id=ids.agent)
    finally:
        conn.close()

    assert result.application["submitted_by_agent"] == 1
    assert result.application["agent_id"] == ids.agent
    assert result.application["submission_channel"] == "agent_portal"


def test_empty_slots_and_unreadable_sources_create_no_rows(seeded_db, ids, storage, student_document):
    student_document(document_id="doc-sop", document_type="sop", file_name="sop.pdf", data=None)
    conn = get_db(seeded_db)
    try:
        resolver = DocumentReuseResolver.load(conn, ids.student, storage)
        result = _submit(conn, ids, new_application_form(ids.program), storage, reuse_resolver=resolver)
        document_count = _count(conn, "application_documents")
    finally:
        conn.close()

    assert result.documents == []
    assert document_count == 0


def test_no_notification_without_assigned_counselor(tmp_path, ids, storage):
    db_path = tmp_path / "admissions.db"
    init_db(db_path)
    seed_world(db_path, with_counselor=False)

    conn = get_db(db_path)
    try:
        result = _submit(conn, ids, new_application_form(ids.program), storage)
        notifications = _count(conn, "notifications")
    finally:
        conn.close()

    assert result.notified_counselor_id is None
    assert notifications == 0


def test_storage_failure_on_one_slot_does_not_block_others(seeded_db, ids, storage, monkeypatch):
    form = new_application_form(ids.program)
    form.documents["passport"] = DocumentUpload(file_name="passport.png", content_type="image/png", data=b"png")
    form.documents["sop"] = DocumentUpload(file_name="sop.docx", data=b"essay")
    real_upload = storage.upload

    def flaky_upload(bucket, path, data, **kwargs):
        if "/passport_" in path:
            raise StorageError("simulated outage")
        return real_upload(bucket, path, data, **kwargs)

    monkeypatch.setattr(storage, "upload", flaky_upload)
    conn = get_db(seeded_db)
    try:
        result = _submit(conn, ids, form, storage)
    finally:
        conn.close()

    assert [doc["document_type"] for doc in result.documents] == ["sop"]


def test_empty_passport_slot_is_filled_from_verified_student_document(seeded_db, ids, storage, student_document):
    original_path = student_document(document_id="doc-passport", document_type="passport", file_name="passport.pdf")
    conn = get_db(seeded_db)
    try:
        resolver = DocumentReuseResolver.load(conn, ids.student, storage)
        result = _submit(conn, ids, new_application_form(ids.program), storage, reuse_resolver=resolver)
        rows = [
            dict(row)
            for row in conn.execute(
                "SELECT * FROM application_documents WHERE application_id = ?", (result.application_id,)
            ).fetchall()
        ]
    finally:
        conn.close()

    assert [row["document_type"] for row in rows] == ["passport"]
    assert rows[0]["storage_path"] != original_path
