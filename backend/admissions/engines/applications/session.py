import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from ...clients.local_store import LocalStorage
from ...clients.storage import ObjectStorage
from ...config import ALLOWED_UPLOAD_EXTENSIONS, MAX_UPLOAD_SIZE_BYTES
from ...db.database import get_db
from ...identity import ActingIdentity, resolve_tenant_id
from .autosave import AutosaveController, SaveOutcome
from .document_reuse import DocumentReuseResolver
from .draft_store import fetch_draft
from .form_schema import DOCUMENT_SLOTS, STEP_COUNT, DocumentUpload, merge_legacy_form_data, new_application_form
from .legacy_migrator import DEFERRED, LegacyDraftMigrator, MigrationResult
from .student_context import load_education_history, load_student, prefill_personal_info, resolve_agent_id
from .submission import SubmissionResult, SubmissionValidationError, submit_application
from .wizard import StepWizard

logger = logging.getLogger(__name__)


class SessionClosedError(RuntimeError):
    """Raised when a finished or closed session receives further edits."""


class SubmissionInProgressError(RuntimeError):
    """Raised when submit is called while another submit is still running."""


class SubmissionFailedError(RuntimeError):
    """Raised when submission fails after validation; the form stays intact for a retry."""


class UploadRejectedError(ValueError):
    """Raised when a document does not meet the upload policy."""


def validate_upload(slot: str, upload: DocumentUpload) -> None:
    if slot not in DOCUMENT_SLOTS:
        raise UploadRejectedError(f"Unknown document slot: {slot}")
    if upload.size == 0:
        raise UploadRejectedError("File is empty")
    if upload.size > MAX_UPLOAD_SIZE_BYTES:
        raise UploadRejectedError("File size must be less than 10MB")
    if Path(upload.file_name).suffix.lower() not in ALLOWED_UPLOAD_EXTENSIONS:
        raise UploadRejectedError(
            "Unsupported file type; allowed: " + ", ".join(sorted(ALLOWED_UPLOAD_EXTENSIONS))
        )


class ApplicationSession:
    """One student's pass through the application wizard.

    Owns the in-memory form, the step wizard, autosave state, the one-shot
    legacy draft migration and, on the last step, the submission.
    """

    def __init__(
        self,
        session_id: str,
        *,
        identity: ActingIdentity | None,
        local_storage: LocalStorage,
        storage: ObjectStorage,
        connect: Callable[[], sqlite3.Connection] = get_db,
        program_id: str | None = None,
        target_student_id: str | None = None,
        debounce_seconds: float | None = None,
    ):
        self.session_id = session_id
        self.identity = identity
        self.local_storage = local_storage
        self.storage = storage
        self.connect = connect
        self.target_student_id = target_student_id

        self.form = new_application_form(program_id)
        self.wizard = StepWizard()
        self.tenant_id: str | None = None
        self.student_id: str | None = None
        self.agent_id: str | None = None
        self.server_draft: dict[str, Any] | None = None
        self.reuse_resolver: DocumentReuseResolver | None = None
        self.result: SubmissionResult | None = None
        self.submit_error: str | None = None
        self.mounted = False
        self.closed = False
        self.last_active = time.monotonic()

        self.autosave = AutosaveController(
            tenant_id="",
            local_storage=local_storage,
            state_provider=lambda: (self.form, self.wizard.current_step),
            connect=connect,
            debounce_seconds=debounce_seconds,
        )
        self.migrator = LegacyDraftMigrator(local_storage, self.autosave)

    async def mount(self) -> MigrationResult:
        draft_fetch_complete = False
        conn = self.connect()
        try:
            self.tenant_id = resolve_tenant_id(conn, self.identity)
            self.autosave.tenant_id = self.tenant_id

            if self.identity is not None:
                student = load_student(conn, self.identity, self.target_student_id)
                self.student_id = str(student["id"])
                self.autosave.student_id = self.student_id
                self.form.personal_info = prefill_personal_info(student, self.identity)
                history = load_education_history(conn, self.student_id)
                if history:
                    self.form.education_history = history
                self.agent_id = resolve_agent_id(conn, self.identity)

                try:
                    self.server_draft = fetch_draft(conn, self.student_id)
                    draft_fetch_complete = True
                except sqlite3.Error:
                    logger.exception("Failed to load saved draft for student=%s", self.student_id)

                try:
                    self.reuse_resolver = DocumentReuseResolver.load(conn, self.student_id, self.storage)
                except sqlite3.Error:
                    logger.exception("Failed to load student documents for student=%s", self.student_id)
                    self.reuse_resolver = DocumentReuseResolver(self.storage)
        finally:
            conn.close()

        last_saved_at = self._hydrate_from_draft()
        migration = await self.migrator.maybe_migrate(
            student_id=self.student_id,
            tenant_id=self.tenant_id,
            draft_fetch_complete=draft_fetch_complete,
            server_draft=self.server_draft,
            current_form=self.form,
            current_step=self.wizard.current_step,
        )
        if migration.form is not None:
            self.form = migration.form
        if migration.step is not None:
            self.wizard.jump_to(migration.step)
        if migration.status != DEFERRED and migration.reason:
            logger.debug("Legacy draft migration: %s (%s)", migration.status, migration.reason)

        self.autosave.mark_hydrated(last_saved_at)
        self.mounted = True
        return migration

    def _hydrate_from_draft(self) -> str | None:
        draft = self.server_draft
        if not draft:
            return None
        form_data = draft.get("form_data")
        if form_data:
            self.form = merge_legacy_form_data(self.form, form_data)
        last_step = draft.get("last_step")
        if isinstance(last_step, int) and 1 <= last_step <= STEP_COUNT:
            self.wizard.jump_to(last_step)
        return draft.get("updated_at")

    def _ensure_open(self) -> None:
        if self.closed or self.wizard.completed:
            raise SessionClosedError("This application session is no longer active")

    def update_form(self, changes: dict[str, Any]) -> None:
        """Apply a partial, camelCase form update through the defensive merge."""
        self._ensure_open()
        self.form = merge_legacy_form_data(self.form, changes)
        self.autosave.notify_change()

    def attach_document(self, slot: str, upload: DocumentUpload) -> None:
        self._ensure_open()
        validate_upload(slot, upload)
        self.form.documents[slot] = upload
        self.autosave.notify_change()

    def remove_document(self, slot: str) -> None:
        self._ensure_open()
        if slot not in DOCUMENT_SLOTS:
            raise UploadRejectedError(f"Unknown document slot: {slot}")
        self.form.documents[slot] = None
        self.autosave.notify_change()

    def go_next(self) -> bool:
        self._ensure_open()
        moved = self.wizard.go_next()
        if moved:
            self.autosave.notify_change()
        return moved

    def go_previous(self) -> bool:
        self._ensure_open()
        moved = self.wizard.go_previous()
        if moved:
            self.autosave.notify_change()
        return moved

    async def save(self) -> SaveOutcome:
        self._ensure_open()
        return await self.autosave.manual_save()

    async def on_visibility_change(self, hidden: bool) -> SaveOutcome | None:
        if not hidden or self.closed or self.wizard.completed:
            return None
        return await self.autosave.save_implicit("visibility hidden")

    async def on_unload(self) -> SaveOutcome | None:
        if self.closed or self.wizard.completed:
            return None
        return await self.autosave.save_implicit("page unload")

    async def submit(self) -> SubmissionResult:
        self._ensure_open()
        if self.autosave.submitting:
            raise SubmissionInProgressError("Submission already in progress")

        self.autosave.submitting = True
        self.autosave.cancel_pending()
        self.submit_error = None
        conn = self.connect()
        try:
            result = await submit_application(
                conn,
                identity=self.identity,
                student_id=self.student_id,
                tenant_id=self.tenant_id or "",
                form=self.form,
                storage=self.storage,
                reuse_resolver=self.reuse_resolver,
                agent_id=self.agent_id,
                local_storage=self.local_storage,
            )
        except SubmissionValidationError as err:
            self.submit_error = str(err)
            raise
        except Exception as err:
            logger.exception("Failed to submit application for student=%s", self.student_id)
            self.submit_error = str(err) or err.__class__.__name__
            raise SubmissionFailedError(f"Failed to submit application: {self.submit_error}") from err
        finally:
            conn.close()
            self.autosave.submitting = False

        self.result = result
        self.server_draft = None
        self.autosave.clear()
        self.wizard.finish()
        return result

    def state(self) -> dict[str, Any]:
        documents: dict[str, Any] = {}
        for slot in DOCUMENT_SLOTS:
            upload = self.form.documents.get(slot)
            reusable = self.reuse_resolver.find_source(slot) if self.reuse_resolver else None
            documents[slot] = {
                "file_name": upload.file_name if upload else None,
                "file_size": upload.size if upload else None,
                "content_type": upload.content_type if upload else None,
                "reusable_document_id": reusable.get("id") if reusable else None,
            }
        return {
            "session_id": self.session_id,
            "student_id": self.student_id,
            "tenant_id": self.tenant_id,
            "agent_id": self.agent_id,
            "wizard": self.wizard.state(),
            "autosave": self.autosave.state(),
            "form": self.form.to_draft_data(),
            "documents": documents,
            "submitting": self.autosave.submitting,
            "submit_error": self.submit_error,
            "submission": submission_summary(self.result) if self.result else None,
        }

    def touch(self) -> None:
        self.last_active = time.monotonic()

    async def close(self) -> None:
        self.closed = True
        await self.autosave.close()
        # Uploaded bytes are only needed until submit or close.
        self.form.documents = {slot: None for slot in DOCUMENT_SLOTS}


def submission_summary(result: SubmissionResult) -> dict[str, Any]:
    return {
        "application_id": result.application_id,
        "tracking_id": result.tracking_id,
        "status": result.application.get("status"),
        "document_types": [doc.get("document_type") for doc in result.documents],
        "notified_counselor_id": result.notified_counselor_id,
    }


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, ApplicationSession] = {}

    def add(self, session: ApplicationSession) -> None:
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> ApplicationSession | None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    async def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_idle(self, max_idle_seconds: float) -> int:
        """Close sessions that have not been touched for ``max_idle_seconds``."""
        cutoff = time.monotonic() - max_idle_seconds
        stale = [sid for sid, session in self._sessions.items() if session.last_active < cutoff]
        for session_id in stale:
            logger.info("Closing idle wizard session %s", session_id)
            await self.close(session_id)
        return len(stale)

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)


sessions = SessionRegistry()
