import asyncio
import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from ...clients.storage import (
    APPLICATION_DOCUMENTS_BUCKET,
    STUDENT_DOCUMENTS_BUCKET,
    ObjectStorage,
    StorageError,
)
from .form_schema import SLOT_COMPATIBLE_TYPES

logger = logging.getLogger(__name__)


def _safe_file_name(file_name: str) -> str:
    name = str(file_name or "").strip().replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return safe or "document"


def load_verified_student_documents(db: sqlite3.Connection, student_id: str) -> list[dict[str, Any]]:
    # Most recently verified first; that order is the tie-break between compatible documents.
    rows = db.execute(
        """
        SELECT id, student_id, document_type, file_name, storage_path, file_size, mime_type,
               verified_status, verified_at, created_at
        FROM student_documents
        WHERE student_id = ? AND lower(verified_status) = 'verified'
        ORDER BY COALESCE(verified_at, '') DESC, COALESCE(created_at, '') DESC, id ASC
        """,
        (student_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def insert_application_document(
    db: sqlite3.Connection,
    *,
    application_id: str,
    document_type: str,
    storage_path: str,
    file_size: int,
    mime_type: str | None,
) -> dict[str, Any]:
    document_id = str(uuid4())
    db.execute(
        """
        INSERT INTO application_documents (id, application_id, document_type, storage_path, file_size, mime_type, uploaded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            document_id,
            application_id,
            document_type,
            storage_path,
            file_size,
            mime_type,
            datetime.now(timezone.utc).isoformat(),
        ),
    )
    db.commit()
    row = db.execute("SELECT * FROM application_documents WHERE id = ?", (document_id,)).fetchone()
    return dict(row)


class DocumentReuseResolver:
    """Fills empty application slots with copies of the student's verified documents."""

    def __init__(self, storage: ObjectStorage, student_documents: list[dict[str, Any]] | None = None):
        self.storage = storage
        self.student_documents = list(student_documents or [])

    @classmethod
    def load(cls, db: sqlite3.Connection, student_id: str, storage: ObjectStorage) -> "DocumentReuseResolver":
        return cls(storage, load_verified_student_documents(db, student_id))

    def find_source(self, slot: str) -> dict[str, Any] | None:
        accepted = {doc_type.lower() for doc_type in SLOT_COMPATIBLE_TYPES.get(slot, ())}
        for document in self.student_documents:
            if str(document.get("document_type") or "").lower() in accepted:
                return document
        return None

    async def reuse_into(self, db: sqlite3.Connection, application_id: str, slot: str) -> dict[str, Any] | None:
        """Copy the matching student document into the application's storage.

        Returns the new ``application_documents`` row, or ``None`` when the slot
        has no compatible document or the copy cannot be made. Only call this
        for slots without a fresh upload; each call inserts a new row.
        """
        source = self.find_source(slot)
        if source is None:
            return None

        try:
            raw = await asyncio.to_thread(self.storage.download, STUDENT_DOCUMENTS_BUCKET, source["storage_path"])
        except StorageError:
            logger.warning(
                "Could not download student document %s for slot=%s; leaving slot empty",
                source.get("id"),
                slot,
            )
            return None

        target_path = f"{application_id}/{slot}_{_safe_file_name(source.get('file_name') or '')}"
        mime_type = source.get("mime_type") or "application/octet-stream"
        await asyncio.to_thread(
            self.storage.upload,
            APPLICATION_DOCUMENTS_BUCKET,
            target_path,
            raw,
            content_type=mime_type,
        )
        return insert_application_document(
            db,
            application_id=application_id,
            document_type=slot,
            storage_path=target_path,
            file_size=len(raw),
            mime_type=mime_type,
        )
