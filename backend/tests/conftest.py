import json
import sqlite3
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from admissions.clients.local_store import LocalStorage
from admissions.clients.storage import STUDENT_DOCUMENTS_BUCKET, ObjectStorage
from admissions.db.database import get_db
from admissions.db.schema import init_db

TENANT_ID = "7d2f1c3a-5b4e-4f6a-8c9d-0e1f2a3b4c5d"
STUDENT_PROFILE_ID = "a1b2c3d4-0001-4000-8000-000000000001"
COUNSELOR_PROFILE_ID = "a1b2c3d4-0002-4000-8000-000000000002"
AGENT_PROFILE_ID = "a1b2c3d4-0003-4000-8000-000000000003"
STUDENT_ID = "b1c2d3e4-0001-4000-9000-000000000001"
AGENT_ID = "c1d2e3f4-0001-4000-a000-000000000001"
UNIVERSITY_ID = "d1e2f3a4-0001-4000-b000-000000000001"
PROGRAM_ID = "3f1c2b4e-8a9d-4c7e-9b1a-2d3e4f5a6b7c"


def seed_world(db_path: Path, *, with_counselor: bool = True) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("INSERT INTO tenants (id, slug, name) VALUES (?, 'unidoxia', 'UniDoxia')", (TENANT_ID,))
        conn.executemany(
            "INSERT INTO profiles (id, tenant_id, role, full_name, email, phone) VALUES (?, ?, ?, ?, ?, ?)",
            [
                (STUDENT_PROFILE_ID, TENANT_ID, "student", "Ana Profile", "ana@example.com", "+100"),
                (COUNSELOR_PROFILE_ID, TENANT_ID, "staff", "Casey Counselor", "casey@example.com", None),
                (AGENT_PROFILE_ID, TENANT_ID, "agent", "Alex Agent", "alex@example.com", None),
            ],
        )
        conn.execute(
            """
            INSERT INTO students (
                id, tenant_id, profile_id, legal_name, contact_email, contact_phone,
                date_of_birth, nationality, passport_number, current_country, address_json
            )
            VALUES (?, ?, ?, 'Ana Lopez', 'ana.lopez@example.com', NULL, '2001-04-12', 'Mexican', 'P1234567', 'Mexico', ?)
            """,
            (STUDENT_ID, TENANT_ID, STUDENT_PROFILE_ID, json.dumps({"street": "12 Reforma Ave", "city": "CDMX"})),
        )
        conn.execute(
            """
            INSERT INTO education_records (id, tenant_id, student_id, level, institution_name, country, start_date, end_date, gpa, grade_scale)
            VALUES ('edu-old', ?, ?, 'High School', 'Colegio Central', 'Mexico', '2015-09-01', '2019-06-30', 9.1, '10'),
                   ('edu-new', ?, ?, 'Bachelors', 'UNAM', 'Mexico', '2019-09-01', '2023-06-30', 3.7, '4')
            """,
            (TENANT_ID, STUDENT_ID, TENANT_ID, STUDENT_ID),
        )
        conn.execute(
            "INSERT INTO agents (id, tenant_id, profile_id, company_name) VALUES (?, ?, ?, 'Global Pathways')",
            (AGENT_ID, TENANT_ID, AGENT_PROFILE_ID),
        )
        conn.execute(
            "INSERT INTO universities (id, tenant_id, name, country) VALUES (?, ?, 'University of Leeds', 'UK')",
            (UNIVERSITY_ID, TENANT_ID),
        )
        conn.execute(
            "INSERT INTO programs (id, tenant_id, university_id, name, level) VALUES (?, ?, ?, 'MSc Data Science', 'master')",
            (PROGRAM_ID, TENANT_ID, UNIVERSITY_ID),
        )
        if with_counselor:
            conn.execute(
                "INSERT INTO student_assignments (id, tenant_id, student_id, counselor_id) VALUES ('assign-1', ?, ?, ?)",
                (TENANT_ID, STUDENT_ID, COUNSELOR_PROFILE_ID),
            )
        conn.commit()
    finally:
        conn.close()


def add_student_document(
    db_path: Path,
    storage: ObjectStorage | None,
    *,
    document_id: str,
    document_type: str,
    file_name: str,
    verified_status: str = "verified",
    verified_at: str | None = "2026-01-01T00:00:00+00:00",
    data: bytes | None = b"%PDF-1.4 student copy",
) -> str:
    storage_path = f"{STUDENT_ID}/{document_id}_{file_name}"
    if storage is not None and data is not None:
        storage.upload(STUDENT_DOCUMENTS_BUCKET, storage_path, data, content_type="application/pdf")
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO student_documents (
                id, tenant_id, student_id, document_type, file_name, storage_path,
                file_size, mime_type, verified_status, verified_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'application/pdf', ?, ?)
            """,
            (
                document_id,
                TENANT_ID,
                STUDENT_ID,
                document_type,
                file_name,
                storage_path,
                len(data or b""),
                verified_status,
                verified_at,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    return storage_path


@pytest.fixture
def ids() -> SimpleNamespace:
    return SimpleNamespace(
        tenant=TENANT_ID,
        student_profile=STUDENT_PROFILE_ID,
        counselor_profile=COUNSELOR_PROFILE_ID,
        agent_profile=AGENT_PROFILE_ID,
        student=STUDENT_ID,
        agent=AGENT_ID,
        university=UNIVERSITY_ID,
        program=PROGRAM_ID,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "admissions.db"
    init_db(path)
    return path


@pytest.fixture
def seeded_db(db_path: Path) -> Path:
    seed_world(db_path)
    return db_path


@pytest.fixture
def connect(db_path: Path):
    return lambda: get_db(db_path)


@pytest.fixture
def storage(tmp_path: Path) -> ObjectStorage:
    return ObjectStorage(tmp_path / "storage")


@pytest.fixture
def local_storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage("browser-1", root=tmp_path / "local_storage")


@pytest.fixture
def student_document(seeded_db: Path, storage: ObjectStorage):
    def _add(**kwargs) -> str:
        return add_student_document(seeded_db, storage, **kwargs)

    return _add
