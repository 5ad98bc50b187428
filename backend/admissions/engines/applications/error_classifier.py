"""Turn backend errors into a small, typed classification.

Backends report a missing column in different shapes: sqlite names it in
the message, PostgreSQL uses SQLSTATE 42703 and PostgREST uses PGRST204
with the column quoted in the message. Callers only need to know the kind
and, when it can be told, which column is missing.
"""

from __future__ import annotations

import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable

MISSING_COLUMN = "missing_column"
UNIQUE_VIOLATION = "unique_violation"
FOREIGN_KEY_VIOLATION = "foreign_key_violation"
OTHER = "other"

MISSING_COLUMN_CODES = {"PGRST204", "42703"}
UNIQUE_VIOLATION_CODES = {"23505", "SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
FOREIGN_KEY_CODES = {"23503", "SQLITE_CONSTRAINT_FOREIGNKEY"}

MISSING_COLUMN_PATTERNS = (
    re.compile(r"has no column named ['\"]?(\w+)", re.IGNORECASE),
    re.compile(r"no such column: (?:\w+\.)?(\w+)", re.IGNORECASE),
    re.compile(r"could not find the '(\w+)' column", re.IGNORECASE),
    re.compile(r"column \"?(?:\w+\.)?(\w+)\"? (?:of relation \"?\w+\"? )?does not exist", re.IGNORECASE),
)


@dataclass(frozen=True)
class ErrorClassification:
    kind: str
    missing_column: str | None = None


def _error_parts(error: Any) -> dict[str, str]:
    if isinstance(error, dict):
        source = error
        get = source.get
    else:
        def get(name: str) -> Any:
            return getattr(error, name, None)

    code = get("code")
    if code is None and isinstance(error, sqlite3.Error):
        code = getattr(error, "sqlite_errorname", None)
    message = get("message")
    if message is None and isinstance(error, BaseException):
        message = str(error)
    return {
        "code": str(code or ""),
        "message": str(message or ""),
        "hint": str(get("hint") or ""),
        "details": str(get("details") or ""),
    }


def _haystack(parts: dict[str, str]) -> str:
    return " ".join(parts.values()).lower()


def classify(error: Any, candidate_columns: Iterable[str] = ()) -> ErrorClassification:
    """Classify ``error``; ``candidate_columns`` resolves unnamed missing columns."""
    parts = _error_parts(error)
    code = parts["code"].upper()
    text = _haystack(parts)

    named: str | None = None
    for pattern in MISSING_COLUMN_PATTERNS:
        for field in ("message", "details", "hint"):
            match = pattern.search(parts[field])
            if match:
                named = match.group(1)
                break
        if named:
            break

    mentions_missing_column = "column" in text and ("does not exist" in text or "schema cache" in text)
    if named or code in MISSING_COLUMN_CODES or mentions_missing_column:
        if named is None:
            for column in candidate_columns:
                if column.lower() in text:
                    named = column
                    break
        return ErrorClassification(MISSING_COLUMN, named)

    if code in UNIQUE_VIOLATION_CODES or "unique constraint" in text or "duplicate key" in text:
        return ErrorClassification(UNIQUE_VIOLATION)
    if code in FOREIGN_KEY_CODES or "foreign key" in text:
        return ErrorClassification(FOREIGN_KEY_VIOLATION)
    return ErrorClassification(OTHER)


def missing_optional_column(error: Any, optional_columns: Iterable[str]) -> str | None:
    """Name of the optional column ``error`` blames, if it blames one of them."""
    remaining = list(optional_columns)
    classification = classify(error, remaining)
    if classification.kind != MISSING_COLUMN or classification.missing_column is None:
        return None
    lowered = {column.lower(): column for column in remaining}
    return lowered.get(classification.missing_column.lower())
