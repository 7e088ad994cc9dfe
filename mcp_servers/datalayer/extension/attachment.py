from __future__ import annotations

import logging
from dataclasses import dataclass

from .storage import LocalStorage, StorageKeys

_LOGGER = logging.getLogger("mcp.datalayer.extension.attachment")


@dataclass(frozen=True, slots=True)
class AttachmentRecord:
    tab_id: int
    tab_title: str = ""

    def to_json(self) -> dict[str, object]:
        return {"id": self.tab_id, "title": self.tab_title}


class AttachmentState:
    """The one tab a human explicitly attached. Persisted; absent means "no tab attached"."""

    def __init__(self, storage: LocalStorage) -> None:
        self._storage = storage

    def attach(self, tab_id: int, title: str = "") -> AttachmentRecord:
        record = AttachmentRecord(tab_id=int(tab_id), tab_title=str(title or ""))
        self._storage.set(**{StorageKeys.TAB_ID: record.tab_id, StorageKeys.TAB_TITLE: record.tab_title})
        _LOGGER.info("attached tab=%s title=%r", record.tab_id, record.tab_title)
        return record

    def detach(self) -> None:
        self._storage.remove(StorageKeys.TAB_ID, StorageKeys.TAB_TITLE)
        _LOGGER.info("detached tab")

    def current(self) -> AttachmentRecord | None:
        data = self._storage.get_many(StorageKeys.TAB_ID, StorageKeys.TAB_TITLE)
        raw_id = data.get(StorageKeys.TAB_ID)
        if raw_id is None or isinstance(raw_id, bool):
            return None
        try:
            tab_id = int(raw_id)
        except (TypeError, ValueError):
            return None
        return AttachmentRecord(tab_id=tab_id, tab_title=str(data.get(StorageKeys.TAB_TITLE) or ""))

    def on_tab_closed(self, tab_id: int) -> bool:
        """Auto-detach when the attached tab goes away. Returns True if it did."""
        record = self.current()
        if record is None or record.tab_id != int(tab_id):
            return False
        self.detach()
        _LOGGER.info("attached tab %s closed; attachment cleared", tab_id)
        return True


__all__ = ["AttachmentRecord", "AttachmentState"]
