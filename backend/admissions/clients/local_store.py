from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from ..config import LOCAL_STORAGE_DIR

logger = logging.getLogger(__name__)

LEGACY_DRAFT_STORAGE_KEY = "application_draft"


def _client_key(value: Any) -> str:
    raw = re.sub(r"\s+", "", str(value or ""))
    safe = "".join(ch for ch in raw if ch.isalnum() or ch in {"-", "_"})
    return safe or "anonymous"


class LocalStorage:
    """String key/value store scoped to one client, persisted as a JSON file.

    Mirrors the browser ``localStorage`` contract: values are strings,
    missing keys read as ``None`` and removing a missing key is a no-op.
    """

    def __init__(self, client_key: str, root: str | Path | None = None):
        self.client_key = _client_key(client_key)
        self.root = Path(root) if root is not None else LOCAL_STORAGE_DIR

    @property
    def path(self) -> Path:
        return self.root / f"{self.client_key}.json"

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Discarding unreadable local storage file %s", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: dict[str, str]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=True, indent=2), encoding="utf-8")

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = str(value)
        self._save(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key not in data:
            return
        del data[key]
        self._save(data)
