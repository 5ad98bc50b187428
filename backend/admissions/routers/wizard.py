import logging
import sqlite3
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, File, Header, HTTPException, UploadFile
from pydantic import BaseModel

from ..clients.local_store import LocalStorage
from ..config import resolve_session_idle_timeout_seconds
from ..clients.storage import get_storage_client
from ..db.database import get_db
from ..engines.applications.autosave import SaveOutcome
from ..engines.applications.form_schema import DocumentUpload
from ..engines.applications.session import (
    ApplicationSession,
    SessionClosedError,
    SubmissionFailedError,
    SubmissionInProgressError,
    UploadRejectedError,
    sessions,
    submission_summary,
)
from ..engines.applications.student_context import StudentProfileMissingError, StudentRequiredError
from ..engines.applications.submission import SubmissionValidationError
from ..identity import ActingIdentity, IdentityNotFoundError, load_identity

router = APIRouter(prefix="/applications/wizard/sessions", tags=["wizard"])
logger = logging.getLogger(__name__)


class CreateSessionRequest(BaseModel):
    client_key: str
    program_id: str | None = None
    student_id: str | None = None


class VisibilityRequest(BaseModel):
    hidden: bool = True


def db_conn():
    conn = get_db()
    try:
        yield conn
    finally:
        conn.close()


def _resolve_identity(db: sqlite3.Connection, user_id: str | None) -> ActingIdentity | None:
    if not user_id or not user_id.strip():
        return None
    try:
        return load_identity(db, user_id.strip())
    except IdentityNotFoundError as err:
        raise HTTPException(status_code=401, detail=str(err)) from err


def _get_session(session_id: str) -> ApplicationSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Wizard session not found")
    return session


def _outcome_to_dict(outcome: SaveOutcome | None) -> dict[str, Any] | None:
    if outcome is None:
        return None
    return {"status": outcome.status, "saved_at": outcome.saved_at, "error": outcome.error}


async def _unload_and_close(session_id: str) -> None:
    session = sessions.get(session_id)
    if session is None:
        return
    await session.on_unload()
    await sessions.close(session_id)


@router.post("")
async def create_session(
    payload: CreateSessionRequest,
    x_user_id: str | None = Header(default=None),
    db: sqlite3.Connection = Depends(db_conn),
):
    await sessions.close_idle(resolve_session_idle_timeout_seconds())
    identity = _resolve_identity(db, x_user_id)
    session = ApplicationSession(
        str(uuid4()),
        identity=identity,
        local_storage=LocalStorage(payload.client_key),
        storage=get_storage_client(),
        program_id=payload.program_id,
        target_student_id=payload.student_id,
    )
    try:
        migration = await session.mount()
    except StudentRequiredError as err:
        raise HTTPException(status_code=400, detail=str(err)) from err
    except StudentProfileMissingError as err:
        raise HTTPException(status_code=404, detail=str(err)) from err
    except sqlite3.Error as err:
        logger.exception("Failed to start wizard session")
        raise HTTPException(status_code=500, detail="Failed to load application data") from err

    sessions.add(session)
    return {
        **session.state(),
        "migration": {"status": migration.status, "reason": migration.reason, "error": migration.error},
    }


@router.get("/{session_id}")
def get_session(session_id: str):
    return _get_session(session_id).state()


@router.put("/{session_id}/form")
async def update_form(session_id: str, changes: dict[str, Any]):
    session = _get_session(session_id)
    try:
        session.update_form(changes)
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return session.state()


@router.post("/{session_id}/documents/{slot}")
async def attach_document(session_id: str, slot: str, file: UploadFile = File(...)):
    session = _get_session(session_id)
    file_name = str(file.filename or "").strip()
    if not file_name:
        raise HTTPException(status_code=400, detail="Document file name is required")

    raw = await file.read()
    upload = DocumentUpload(
        file_name=file_name,
        content_type=file.content_type or "application/octet-stream",
        data=raw,
    )
    try:
        session.attach_document(slot, upload)
    except UploadRejectedError as err:
        raise HTTPException(status_code=400, detail=str(err)) from err
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return session.state()["documents"][slot]


@router.delete("/{session_id}/documents/{slot}")
async def remove_document(session_id: str, slot: str):
    session = _get_session(session_id)
    try:
        session.remove_document(slot)
    except UploadRejectedError as err:
        raise HTTPException(status_code=400, detail=str(err)) from err
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return {"ok": True}


@router.post("/{session_id}/next")
async def next_step(session_id: str):
    session = _get_session(session_id)
    try:
        moved = session.go_next()
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return {**session.wizard.state(), "moved": moved, "scroll_to_top": True}


@router.post("/{session_id}/previous")
async def previous_step(session_id: str):
    session = _get_session(session_id)
    try:
        moved = session.go_previous()
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return {**session.wizard.state(), "moved": moved, "scroll_to_top": True}


@router.post("/{session_id}/save")
async def save_draft(session_id: str):
    session = _get_session(session_id)
    try:
        outcome = await session.save()
    except SessionClosedError as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    return {**_outcome_to_dict(outcome), "autosave": session.autosave.state()}


@router.post("/{session_id}/visibility")
async def visibility_changed(session_id: str, payload: VisibilityRequest):
    session = _get_session(session_id)
    outcome = await session.on_visibility_change(payload.hidden)
    return {"outcome": _outcome_to_dict(outcome)}


@router.post("/{session_id}/unload")
async def page_unload(session_id: str, background_tasks: BackgroundTasks):
    _get_session(session_id)
    background_tasks.add_task(_unload_and_close, session_id)
    return {"accepted": True}


@router.post("/{session_id}/submit")
async def submit(session_id: str):
    session = _get_session(session_id)
    try:
        result = await session.submit()
    except SubmissionValidationError as err:
        raise HTTPException(status_code=400, detail=str(err)) from err
    except (SessionClosedError, SubmissionInProgressError) as err:
        raise HTTPException(status_code=409, detail=str(err)) from err
    except SubmissionFailedError as err:
        raise HTTPException(status_code=500, detail=str(err)) from err
    await sessions.close(session_id)
    return submission_summary(result)


@router.delete("/{session_id}")
async def close_session(session_id: str):
    closed = await sessions.close(session_id)
    if not closed:
        raise HTTPException(status_code=404, detail="Wizard session not found")
    return {"ok": True}
