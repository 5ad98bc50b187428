"""Application draft lifecycle and submission engines."""

from .autosave import AutosaveController, SaveOutcome
from .legacy_migrator import LegacyDraftMigrator, MigrationResult
from .session import ApplicationSession, SessionRegistry, sessions
from .submission import SubmissionResult, SubmissionValidationError, submit_application

__all__ = [
    "ApplicationSession",
    "AutosaveController",
    "LegacyDraftMigrator",
    "MigrationResult",
    "SaveOutcome",
    "SessionRegistry",
    "SubmissionResult",
    "SubmissionValidationError",
    "sessions",
    "submit_application",
]
