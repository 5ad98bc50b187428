import sqlite3
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from admissions.engines.applications.error_classifier import (
    FOREIGN_KEY_VIOLATION,
    MISSING_COLUMN,
    OTHER,
    UNIQUE_VIOLATION,
    classify,
    missing_optional_column,
)

OPTIONAL = ["application_source", "submission_channel", "submitted_by_agent", "agent_id"]


def _sqlite_error(sql: str, params: tuple = ()) -> sqlite3.Error:
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE TABLE applications (id TEXT PRIMARY KEY, status TEXT)")
        conn.execute("INSERT INTO applications (id, status) VALUES ('a1', 'submitted')")
        try:
            conn.execute(sql, params)
        except sqlite3.Error as err:
            return err
    finally:
        conn.close()
    raise AssertionError(f"statement did not fail: {sql}")


def test_sqlite_missing_column_names_the_column():
    err = _sqlite_error("INSERT INTO applications (id, agent_id) VALUES ('a2', NULL)")
    result = classify(err)
    assert result.kind == MISSING_COLUMN
    assert result.missing_column == "agent_id"
    assert missing_optional_column(err, OPTIONAL) == "agent_id"


def test_sqlite_unique_violation():
    err = _sqlite_error("INSERT INTO applications (id, status) VALUES ('a1', 'draft')")
    assert classify(err).kind == UNIQUE_VIOLATION
    assert missing_optional_column(err, OPTIONAL) is None


def test_postgrest_schema_cache_error():
    err = {
        "code": "PGRST204",
        "message": "Could not find the 'submission_channel' column of 'applications' in the schema cache",
        "details": None,
        "hint": None,
    }
    result = classify(err)
    assert result.kind == MISSING_COLUMN
    assert result.missing_column == "submission_channel"


def test_postgres_undefined_column_with_relation():
    err = {"code": "42703", "message": 'column "application_source" of relation "applications" does not exist'}
    assert missing_optional_column(err, OPTIONAL) == "application_source"


def test_unnamed_missing_column_resolved_from_candidates():
    err = {
        "code": "42703",
        "message": "undefined column",
        "hint": 'Perhaps you meant to reference the column "applications.Submitted_By_Agent".',
    }
    result = classify(err, OPTIONAL)
    assert result.kind == MISSING_COLUMN
    assert result.missing_column == "submitted_by_agent"


def test_missing_column_outside_optional_set_is_not_retryable():
    err = _sqlite_error("INSERT INTO applications (id, program_id) VALUES ('a3', 'p1')")
    assert classify(err).kind == MISSING_COLUMN
    assert missing_optional_column(err, OPTIONAL) is None


def test_foreign_key_and_other_errors():
    assert classify({"code": "23503", "message": "insert violates foreign key constraint"}).kind == FOREIGN_KEY_VIOLATION
    assert classify(ValueError("boom")).kind == OTHER
    assert classify({}).kind == OTHER
