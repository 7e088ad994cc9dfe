"""Durable extension-local key/value storage.

Design
- One small JSON object on disk; `path=None` keeps everything in memory.
- Atomic writes: write temp file then replace.
- Best-effort: a corrupt or unreadable file reads as empty (fail-soft).
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any

_LOGGER = logging.getLogger("mcp.datalayer.extension.storage")


class StorageKeys:
    TAB_ID = "attachedTabId"
    TAB_TITLE = "attachedTabTitle"
    LAST_EVENT_NUMBER = "lastGtmEventNumber"
    PREVIEW_SESSION = "gtmPreviewCb"
    ACTIVE_SERVER_INSTANCE = "activeServerInstanceId"
    ACTIVE_SERVER_STARTED_AT = "activeServerStartedAt"


class LocalStorage:
    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._memory: dict[str, Any] = {}

    def _load(self) -> dict[str, Any]:
        if self.path is None:
            return dict(self._memory)
        try:
            if not self.path.is_file():
                return {}
            obj = json.loads(self.path.read_text(encoding="utf-8", errors="replace"))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("storage unreadable, treating as empty path=%s: %s", self.path, exc)
            return {}
        return obj if isinstance(obj, dict) else {}

    def _save(self, data: dict[str, Any]) -> bool:
        if self.path is None:
            self._memory = dict(data)
            return True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=True, indent=2, sort_keys=True), encoding="utf-8")
            with suppress(Exception):
                os.chmod(tmp, 0o600)
            tmp.replace(self.path)
        except OSError as exc:
            _LOGGER.error("storage write failed path=%s: %s", self.path, exc)
            return False
        return True

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def get_many(self, *keys: str) -> dict[str, Any]:
        with self._lock:
            data = self._load()
        return {k: data[k] for k in keys if k in data}

    def set(self, **values: Any) -> bool:
        with self._lock:
            data = self._load()
            data.update(values)
            return self._save(data)

    def remove(self, *keys: str) -> bool:
        with self._lock:
            data = self._load()
            for k in keys:
                data.pop(k, None)
            return self._save(data)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return self._load()


__all__ = ["LocalStorage", "StorageKeys"]
