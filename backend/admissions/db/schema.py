from pathlib import Path

from .database import get_db

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    tenant_id TEXT,
    role TEXT NOT NULL DEFAULT 'student',
    full_name TEXT,
    email TEXT,
    phone TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS students (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    profile_id TEXT REFERENCES profiles(id),
    legal_name TEXT,
    contact_email TEXT,
    contact_phone TEXT,
    date_of_birth TEXT,
    nationality TEXT,
    passport_number TEXT,
    current_country TEXT,
    address_json TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS education_records (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    level TEXT,
    institution_name TEXT,
    country TEXT,
    start_date TEXT,
    end_date TEXT,
    gpa REAL,
    grade_scale TEXT
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    profile_id TEXT NOT NULL REFERENCES profiles(id),
    company_name TEXT
);

CREATE TABLE IF NOT EXISTS universities (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    country TEXT
);

CREATE TABLE IF NOT EXISTS programs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    university_id TEXT REFERENCES universities(id),
    name TEXT NOT NULL,
    level TEXT
);

CREATE TABLE IF NOT EXISTS student_assignments (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    counselor_id TEXT NOT NULL REFERENCES profiles(id)
);

CREATE TABLE IF NOT EXISTS student_documents (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    document_type TEXT NOT NULL,
    file_name TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    file_size INTEGER,
    mime_type TEXT,
    verified_status TEXT DEFAULT 'pending',
    verified_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS application_drafts (
    id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL UNIQUE REFERENCES students(id) ON DELETE CASCADE,
    tenant_id TEXT NOT NULL,
    program_id TEXT,
    form_data TEXT,
    last_step INTEGER NOT NULL DEFAULT 1 CHECK (last_step BETWEEN 1 AND 5),
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS applications (
    id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL REFERENCES students(id),
    program_id TEXT NOT NULL REFERENCES programs(id),
    intake_year INTEGER,
    intake_month INTEGER,
    intake_id TEXT,
    status TEXT NOT NULL DEFAULT 'submitted',
    notes TEXT,
    tenant_id TEXT NOT NULL,
    submitted_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS application_documents (
    id TEXT PRIMARY KEY,
    application_id TEXT NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
    document_type TEXT NOT NULL CHECK (document_type IN ('transcript', 'passport', 'ielts', 'sop')),
    storage_path TEXT NOT NULL,
    file_size INTEGER,
    mime_type TEXT,
    uploaded_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'general',
    title TEXT NOT NULL,
    content TEXT,
    metadata_json TEXT,
    action_url TEXT,
    read INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);
"""

# Columns shipped in later migrations; not every deployed database has them.
APPLICATION_ATTRIBUTION_COLUMNS = [
    ("application_source", "TEXT"),
    ("submitted_by_agent", "INTEGER DEFAULT 0"),
    ("submission_channel", "TEXT"),
    ("agent_id", "TEXT REFERENCES agents(id)"),
]


def init_db(db_path: str | Path | None = None, *, with_attribution_columns: bool = True) -> None:
    conn = get_db(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        if with_attribution_columns:
            _ensure_applications_columns(conn)
        conn.commit()
    finally:
        conn.close()


def _existing_columns(conn, table: str) -> set[str]:
    return {
        str(row[1])
        for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
        if len(row) > 1
    }


def _ensure_applications_columns(conn) -> None:
    """Add attribution columns that were added after the initial schema deployment."""
    existing = _existing_columns(conn, "applications")
    for column, definition in APPLICATION_ATTRIBUTION_COLUMNS:
        if column in existing:
            continue
        conn.execute(f"ALTER TABLE applications ADD COLUMN {column} {definition}")
