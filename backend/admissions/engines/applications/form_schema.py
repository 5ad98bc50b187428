"""In-memory application form shape plus the normalizers that absorb older data."""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STEPS = [
    {"id": 1, "title": "Personal Information", "description": "Your basic details"},
    {"id": 2, "title": "Education History", "description": "Academic background"},
    {"id": 3, "title": "Desired Course", "description": "Select your course"},
    {"id": 4, "title": "Documents", "description": "Upload required files"},
    {"id": 5, "title": "Review & Submit", "description": "Final review"},
]
STEP_COUNT = len(STEPS)

DOCUMENT_SLOTS = ("transcript", "passport", "ielts", "sop")

# Student document types that may stand in for each application slot.
SLOT_COMPATIBLE_TYPES: dict[str, tuple[str, ...]] = {
    "transcript": ("transcript", "degree_certificate"),
    "passport": ("passport",),
    "ielts": ("ielts", "toefl", "english_proficiency", "english_test"),
    "sop": ("sop", "personal_statement"),
}

EDUCATION_LEVEL_OPTIONS = [
    {"value": "high_school", "label": "High School"},
    {"value": "associate", "label": "Associate Degree"},
    {"value": "bachelor", "label": "Bachelor Degree"},
    {"value": "master", "label": "Master Degree"},
    {"value": "doctorate", "label": "Doctorate/PhD"},
    {"value": "diploma", "label": "Diploma"},
    {"value": "certificate", "label": "Certificate"},
]

EDUCATION_LEVEL_SYNONYMS = {
    "bachelors": "bachelor",
    "bachelor degree": "bachelor",
    "bachelor degrees": "bachelor",
    "undergraduate": "bachelor",
    "masters": "master",
    "master's": "master",
    "master's degree": "master",
    "master degree": "master",
    "postgraduate": "master",
    "phd": "doctorate",
    "ph.d.": "doctorate",
    "doctorate/phd": "doctorate",
    "highschool": "high_school",
    "high school": "high_school",
    "associate degree": "associate",
}

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

PERSONAL_INFO_FIELDS = (
    "fullName",
    "email",
    "phone",
    "dateOfBirth",
    "nationality",
    "passportNumber",
    "currentCountry",
    "address",
)
EDUCATION_TEXT_FIELDS = ("institutionName", "country", "startDate", "endDate", "gradeScale")
LEGACY_STEP_KEYS = ("currentStep", "lastStep", "step")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PersonalInfo(_CamelModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""
    date_of_birth: str = ""
    nationality: str = ""
    passport_number: str = ""
    current_country: str = ""
    address: str = ""


class EducationRecord(_CamelModel):
    id: str
    level: str = ""
    institution_name: str = ""
    country: str = ""
    start_date: str = ""
    end_date: str = ""
    gpa: str = ""
    grade_scale: str = ""


class ProgramSelection(_CamelModel):
    program_id: str = ""
    intake_year: int = Field(default_factory=lambda: datetime.now().year)
    intake_month: int = 1
    intake_id: str | None = None


class DocumentUpload(BaseModel):
    file_name: str
    content_type: str = "application/octet-stream"
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        if "." not in self.file_name:
            return ""
        return self.file_name.rsplit(".", 1)[-1].lower()


def _empty_documents() -> dict[str, DocumentUpload | None]:
    return {slot: None for slot in DOCUMENT_SLOTS}


class ApplicationForm(_CamelModel):
    personal_info: PersonalInfo = Field(default_factory=PersonalInfo)
    education_history: list[EducationRecord] = Field(default_factory=list)
    program_selection: ProgramSelection = Field(default_factory=ProgramSelection)
    # Files live only for the session; they are never serialized into a draft.
    documents: dict[str, DocumentUpload | None] = Field(default_factory=_empty_documents, exclude=True)
    notes: str = ""

    def to_draft_data(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def new_application_form(program_id: str | None = None) -> ApplicationForm:
    form = ApplicationForm()
    if program_id:
        form.program_selection.program_id = str(program_id)
    return form


def is_valid_uuid(value: Any) -> bool:
    if not value or not isinstance(value, str):
        return False
    return bool(UUID_RE.match(value))


def to_valid_uuid_or_null(value: Any) -> str | None:
    return value if is_valid_uuid(value) else None


def normalize_education_level(raw_level: Any) -> str:
    """Map a free-form level string onto a canonical option value, or ``""``."""
    if not isinstance(raw_level, str):
        return ""
    normalized = raw_level.strip().lower()
    if not normalized:
        return ""

    for option in EDUCATION_LEVEL_OPTIONS:
        if option["value"] == normalized:
            return option["value"]
    for option in EDUCATION_LEVEL_OPTIONS:
        if option["label"].lower() == normalized:
            return option["value"]
    return EDUCATION_LEVEL_SYNONYMS.get(normalized, "")


def get_education_level_label(value: str) -> str:
    for option in EDUCATION_LEVEL_OPTIONS:
        if option["value"] == value:
            return option["label"]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_finite_number(value: Any) -> float | None:
    if _is_number(value):
        parsed = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _merge_education_entry(entry: Any, index: int) -> EducationRecord | None:
    if not isinstance(entry, dict):
        return None

    raw_id = entry.get("id")
    values: dict[str, str] = {
        "id": raw_id if isinstance(raw_id, str) and raw_id else f"edu-{index + 1}-{uuid4().hex[:6]}",
        "level": normalize_education_level(entry.get("level")),
    }
    for field in EDUCATION_TEXT_FIELDS:
        raw = entry.get(field)
        values[field] = raw if isinstance(raw, str) else ""

    gpa = entry.get("gpa")
    if isinstance(gpa, str):
        values["gpa"] = gpa
    elif _is_number(gpa):
        values["gpa"] = str(gpa)
    else:
        values["gpa"] = ""
    return EducationRecord.model_validate(values)


def merge_legacy_form_data(current: ApplicationForm, legacy: Any) -> ApplicationForm:
    """Copy every well-typed field of ``legacy`` over ``current``.

    Never raises: malformed fields keep the current value, malformed
    education entries are dropped and session documents are preserved.
    """
    if not isinstance(legacy, dict):
        return current

    personal_info = current.personal_info.model_copy()
    legacy_personal = legacy.get("personalInfo")
    if isinstance(legacy_personal, dict):
        merged = current.personal_info.model_dump(by_alias=True)
        for field in PERSONAL_INFO_FIELDS:
            if isinstance(legacy_personal.get(field), str):
                merged[field] = legacy_personal[field]
        personal_info = PersonalInfo.model_validate(merged)

    raw_history = legacy.get("educationHistory")
    if isinstance(raw_history, list):
        education_history = [
            record
            for record in (_merge_education_entry(entry, index) for index, entry in enumerate(raw_history))
            if record is not None
        ]
    else:
        education_history = [record.model_copy() for record in current.education_history]

    program_selection = current.program_selection.model_copy()
    legacy_program = legacy.get("programSelection")
    if isinstance(legacy_program, dict):
        program_id = legacy_program.get("programId")
        if isinstance(program_id, str):
            program_selection.program_id = program_id

        year = _parse_finite_number(legacy_program.get("intakeYear"))
        if year is not None:
            program_selection.intake_year = int(year)

        month = _parse_finite_number(legacy_program.get("intakeMonth"))
        if month is not None:
            program_selection.intake_month = int(month)

        intake_id = legacy_program.get("intakeId")
        if isinstance(intake_id, str):
            program_selection.intake_id = intake_id

    notes = legacy.get("notes")

    return ApplicationForm(
        personal_info=personal_info,
        education_history=education_history,
        program_selection=program_selection,
        documents=dict(current.documents),
        notes=notes if isinstance(notes, str) else current.notes,
    )


def infer_legacy_step(legacy: Any, step_count: int = STEP_COUNT) -> int | None:
    """First key among ``currentStep``/``lastStep``/``step`` holding a step in range."""
    if not isinstance(legacy, dict):
        return None
    for key in LEGACY_STEP_KEYS:
        numeric = _parse_finite_number(legacy.get(key))
        if numeric is None:
            continue
        rounded = int(round(numeric))
        if 1 <= rounded <= step_count:
            return rounded
    return None


def build_local_snapshot(form: ApplicationForm, current_step: int) -> dict[str, Any]:
    return {**form.to_draft_data(), "currentStep": current_step}
