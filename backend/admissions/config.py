import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DATA_DIR = Path(
    os.environ.get("ADMISSIONS_DATA_DIR", "").strip()
    or Path(__file__).resolve().parents[2] / "data"
)
DB_PATH = Path(os.environ.get("ADMISSIONS_DB_PATH", "").strip() or DATA_DIR / "admissions.db")
STORAGE_DIR = DATA_DIR / "storage"
LOCAL_STORAGE_DIR = DATA_DIR / "local_storage"

DEFAULT_TENANT_SLUG = os.environ.get("DEFAULT_TENANT_SLUG", "").strip() or "unidoxia"
DEFAULT_TENANT_ID = (
    os.environ.get("DEFAULT_TENANT_ID", "").strip() or "00000000-0000-0000-0000-000000000001"
)

APPLICATION_SOURCE = os.environ.get("APPLICATION_SOURCE", "").strip() or "UniDoxia"

DEFAULT_AUTO_SAVE_DEBOUNCE_MS = 1500

MAX_UPLOAD_SIZE_BYTES = 10 * 1024 * 1024
ALLOWED_UPLOAD_EXTENSIONS = {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"}


def resolve_auto_save_debounce_seconds() -> float:
    env_value = os.environ.get("AUTO_SAVE_DEBOUNCE_MS")
    if env_value:
        try:
            parsed = int(env_value)
            if parsed >= 0:
                return parsed / 1000
        except ValueError:
            pass
        logger.warning("Invalid AUTO_SAVE_DEBOUNCE_MS value: %s", env_value)
    return DEFAULT_AUTO_SAVE_DEBOUNCE_MS / 1000


DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS = 3600


def resolve_session_idle_timeout_seconds() -> float:
    env_value = os.environ.get("SESSION_IDLE_TIMEOUT_SECONDS")
    if env_value:
        try:
            parsed = float(env_value)
            if parsed > 0:
                return parsed
        except ValueError:
            pass
        logger.warning("Invalid SESSION_IDLE_TIMEOUT_SECONDS value: %s", env_value)
    return float(DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS)
