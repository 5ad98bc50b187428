import json
import logging
from dataclasses import dataclass
from typing import Any

from ...clients.local_store import LEGACY_DRAFT_STORAGE_KEY, LocalStorage
from .autosave import AutosaveController
from .form_schema import ApplicationForm, infer_legacy_step, merge_legacy_form_data

logger = logging.getLogger(__name__)

DEFERRED = "deferred"
SKIPPED = "skipped"
DISCARDED = "discarded"
MIGRATED = "migrated"
FAILED = "failed"


@dataclass
class MigrationResult:
    status: str
    reason: str = ""
    form: ApplicationForm | None = None
    step: int | None = None
    draft: dict[str, Any] | None = None
    error: str | None = None


class LegacyDraftMigrator:
    """Moves a draft kept only in client-local storage into the backend, once per session."""

    def __init__(self, local_storage: LocalStorage, autosave: AutosaveController):
        self.local_storage = local_storage
        self.autosave = autosave
        self.attempted = False

    async def maybe_migrate(
        self,
        *,
        student_id: str | None,
        tenant_id: str | None,
        draft_fetch_complete: bool,
        server_draft: dict[str, Any] | None,
        current_form: ApplicationForm,
        current_step: int,
    ) -> MigrationResult:
        if self.attempted:
            return MigrationResult(SKIPPED, "already attempted")
        if not student_id or not tenant_id or not draft_fetch_complete:
            return MigrationResult(DEFERRED, "waiting for student, tenant and draft lookup")

        # Latch before the first await so overlapping triggers cannot both migrate.
        self.attempted = True
        self.autosave.legacy_draft_resolved = True

        if server_draft:
            return MigrationResult(SKIPPED, "server draft exists")

        raw = self.local_storage.get_item(LEGACY_DRAFT_STORAGE_KEY)
        if not raw:
            return MigrationResult(SKIPPED, "no local draft")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unparseable local draft for %s", self.local_storage.client_key)
            self.local_storage.remove_item(LEGACY_DRAFT_STORAGE_KEY)
            return MigrationResult(DISCARDED, "local draft is not valid JSON")

        merged = merge_legacy_form_data(current_form, parsed)
        legacy_step = infer_legacy_step(parsed)
        step = legacy_step if legacy_step is not None else current_step

        try:
            draft = await self.autosave.save_to_backend("legacy migration", form=merged, step=step)
        except Exception as err:
            # The local copy stays so nothing is lost; the error is already on autosave.
            return MigrationResult(FAILED, "upsert failed", form=merged, step=step, error=str(err))

        self.local_storage.remove_item(LEGACY_DRAFT_STORAGE_KEY)
        logger.info("Migrated local draft for student=%s (step=%d)", student_id, step)
        return MigrationResult(MIGRATED, form=merged, step=step, draft=draft)
