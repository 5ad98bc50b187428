"""Draft persistence for a live application session.

Two tiers: the backend draft row is authoritative whenever a student id is
known; the client-local snapshot is the fallback when it is not, or when an
implicit save (tab hidden, page unload) cannot reach the backend.
"""

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ...clients.local_store import LEGACY_DRAFT_STORAGE_KEY, LocalStorage
from ...config import resolve_auto_save_debounce_seconds
from ...db.database import get_db
from .draft_store import DraftPayload, upsert_draft
from .form_schema import ApplicationForm, build_local_snapshot

logger = logging.getLogger(__name__)

SAVED = "saved"
SAVED_LOCALLY = "saved_locally"
FAILED = "failed"


@dataclass
class SaveOutcome:
    status: str
    saved_at: str | None = None
    error: str | None = None
    draft: dict[str, Any] | None = None


class AutosaveController:
    def __init__(
        self,
        *,
        tenant_id: str,
        local_storage: LocalStorage,
        state_provider: Callable[[], tuple[ApplicationForm, int]],
        connect: Callable[[], sqlite3.Connection] = get_db,
        debounce_seconds: float | None = None,
    ):
        self.tenant_id = tenant_id
        self.local_storage = local_storage
        self.state_provider = state_provider
        self.connect = connect
        self.debounce_seconds = (
            resolve_auto_save_debounce_seconds() if debounce_seconds is None else debounce_seconds
        )

        self.student_id: str | None = None
        self.submitting = False
        self.has_unsaved_changes = False
        self.last_saved_at: str | None = None
        self.auto_save_error: str | None = None
        # Stays False until the legacy draft check has run; an unmigrated local draft must survive saves.
        self.legacy_draft_resolved = False

        self._hydrated = False
        self._change_seq = 0
        self._issued_seq = 0
        self._applied_seq = 0
        self._in_flight = 0
        self._debounce_task: asyncio.Task | None = None

    @property
    def is_saving(self) -> bool:
        return self._in_flight > 0

    def state(self) -> dict[str, Any]:
        return {
            "has_unsaved_changes": self.has_unsaved_changes,
            "last_saved_at": self.last_saved_at,
            "auto_save_error": self.auto_save_error,
            "is_saving": self.is_saving,
        }

    def mark_hydrated(self, last_saved_at: str | None = None) -> None:
        if last_saved_at:
            self.last_saved_at = last_saved_at
        self._hydrated = True

    def notify_change(self) -> None:
        if not self._hydrated:
            return
        self._change_seq += 1
        self.has_unsaved_changes = True
        self.schedule_autosave()

    def record_error(self, err: BaseException) -> None:
        self.auto_save_error = str(err) or err.__class__.__name__

    def schedule_autosave(self) -> None:
        if not self.student_id or self.submitting:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self.cancel_pending()
        self._debounce_task = loop.create_task(self._debounced_save())

    def cancel_pending(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = None

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self.submitting:
            return
        try:
            await self.save_to_backend("autosave")
        except Exception:
            # Already logged and surfaced through auto_save_error.
            return

    def _write_draft(self, payload: DraftPayload) -> dict[str, Any]:
        conn = self.connect()
        try:
            return upsert_draft(conn, payload)
        finally:
            conn.close()

    async def save_to_backend(
        self,
        trigger: str,
        *,
        form: ApplicationForm | None = None,
        step: int | None = None,
    ) -> dict[str, Any]:
        """Upsert the draft row; errors are recorded and re-raised."""
        if not self.student_id:
            raise LookupError("Student profile not loaded yet")
        if form is None or step is None:
            current_form, current_step = self.state_provider()
            form = form if form is not None else current_form
            step = step if step is not None else current_step

        self._issued_seq += 1
        seq = self._issued_seq
        change_seq = self._change_seq
        payload = DraftPayload(
            student_id=self.student_id,
            tenant_id=self.tenant_id,
            program_id=form.program_selection.program_id or None,
            last_step=step,
            form_data=form,
        )

        self._in_flight += 1
        try:
            draft = await asyncio.to_thread(self._write_draft, payload)
        except Exception as err:
            logger.exception("Draft %s failed for student=%s", trigger, self.student_id)
            if seq > self._applied_seq:
                self._applied_seq = seq
                self.record_error(err)
            raise
        finally:
            self._in_flight -= 1

        self._apply_saved(seq, change_seq, draft)
        return draft

    def _apply_saved(self, seq: int, change_seq: int, draft: dict[str, Any]) -> None:
        # Responses can arrive out of order; only the newest request updates the indicators.
        if seq <= self._applied_seq:
            logger.debug("Ignoring stale draft response seq=%d (applied=%d)", seq, self._applied_seq)
            return
        self._applied_seq = seq
        self.last_saved_at = draft.get("updated_at") or datetime.now(timezone.utc).isoformat()
        self.auto_save_error = None
        if change_seq == self._change_seq:
            self.has_unsaved_changes = False
        if not self.legacy_draft_resolved:
            return
        try:
            self.local_storage.remove_item(LEGACY_DRAFT_STORAGE_KEY)
        except OSError:
            logger.warning("Could not clear local draft snapshot for %s", self.local_storage.client_key)

    def write_local_snapshot(self) -> None:
        form, step = self.state_provider()
        self.local_storage.set_item(LEGACY_DRAFT_STORAGE_KEY, json.dumps(build_local_snapshot(form, step)))

    async def manual_save(self) -> SaveOutcome:
        """Explicit save: backend when a student id is known, local snapshot otherwise."""
        self.cancel_pending()
        if self.submitting:
            return SaveOutcome(FAILED, error="submission in progress")
        if not self.student_id:
            try:
                self.write_local_snapshot()
            except OSError as err:
                logger.exception("Local draft snapshot failed")
                self.record_error(err)
                return SaveOutcome(FAILED, error=self.auto_save_error)
            return SaveOutcome(SAVED_LOCALLY, saved_at=datetime.now(timezone.utc).isoformat())

        try:
            draft = await self.save_to_backend("manual save")
        except Exception:
            return SaveOutcome(FAILED, error=self.auto_save_error)
        return SaveOutcome(SAVED, saved_at=self.last_saved_at, draft=draft)

    async def save_implicit(self, trigger: str) -> SaveOutcome:
        """Best-effort save for tab-hidden and unload triggers; never raises."""
        self.cancel_pending()
        if self.submitting:
            return SaveOutcome(FAILED, error="submission in progress")
        if self.student_id:
            try:
                draft = await self.save_to_backend(trigger)
                return SaveOutcome(SAVED, saved_at=self.last_saved_at, draft=draft)
            except Exception:
                logger.info("Falling back to local draft snapshot after %s", trigger)

        try:
            self.write_local_snapshot()
        except OSError as err:
            logger.exception("Local draft snapshot failed after %s", trigger)
            return SaveOutcome(FAILED, error=str(err))
        return SaveOutcome(SAVED_LOCALLY, saved_at=datetime.now(timezone.utc).isoformat())

    def clear(self) -> None:
        self.cancel_pending()
        self.has_unsaved_changes = False
        self.last_saved_at = None
        self.auto_save_error = None

    async def close(self) -> None:
        task = self._debounce_task
        self.cancel_pending()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
