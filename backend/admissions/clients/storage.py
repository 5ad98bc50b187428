"""Filesystem-backed object storage with named buckets and path addressing."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from ..config import STORAGE_DIR

logger = logging.getLogger(__name__)

STUDENT_DOCUMENTS_BUCKET = "student-documents"
APPLICATION_DOCUMENTS_BUCKET = "application-documents"
BUCKETS = (STUDENT_DOCUMENTS_BUCKET, APPLICATION_DOCUMENTS_BUCKET)

_META_SUFFIX = ".meta.json"

_client = None  # module-level cache
_client_root: Path | None = None


class StorageError(RuntimeError):
    """Raised when an object cannot be uploaded or downloaded."""


class ObjectStorage:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _object_path(self, bucket: str, path: str) -> Path:
        if bucket not in BUCKETS:
            raise StorageError(f"Unknown bucket: {bucket}")
        parts = PurePosixPath(str(path or "").strip()).parts
        if not parts or any(part in {"..", "/", ""} for part in parts):
            raise StorageError(f"Invalid object path: {path!r}")
        return self.root.joinpath(bucket, *parts)

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> str:
        target = self._object_path(bucket, path)
        if target.exists() and not upsert:
            raise StorageError(f"Object already exists: {bucket}/{path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            meta = {
                "content_type": content_type or "application/octet-stream",
                "cache_control": cache_control,
                "size": len(data),
                "uploaded_at": datetime.now(timezone.utc).isoformat(),
            }
            target.with_name(target.name + _META_SUFFIX).write_text(json.dumps(meta), encoding="utf-8")
        except OSError as err:
            raise StorageError(f"Upload failed for {bucket}/{path}: {err}") from err
        return path

    def download(self, bucket: str, path: str) -> bytes:
        target = self._object_path(bucket, path)
        try:
            return target.read_bytes()
        except FileNotFoundError as err:
            raise StorageError(f"Object not found: {bucket}/{path}") from err
        except OSError as err:
            raise StorageError(f"Download failed for {bucket}/{path}: {err}") from err

    def content_type(self, bucket: str, path: str) -> str | None:
        target = self._object_path(bucket, path)
        meta_path = target.with_name(target.name + _META_SUFFIX)
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        value = meta.get("content_type") if isinstance(meta, dict) else None
        return str(value) if value else None

    def exists(self, bucket: str, path: str) -> bool:
        return self._object_path(bucket, path).exists()


def get_storage_client(root: str | Path | None = None) -> ObjectStorage:
    """Return a cached storage client rooted at ``root`` (defaults to the data dir)."""
    global _client, _client_root  # noqa: PLW0603

    target = Path(root) if root is not None else STORAGE_DIR
    if _client is not None and _client_root == target:
        return _client
    _client = ObjectStorage(target)
    _client_root = target
    logger.info("Object storage initialised (root=%s)", target)
    return _client
