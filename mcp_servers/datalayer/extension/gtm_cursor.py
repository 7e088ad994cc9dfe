"""High-water mark for GTM preview (Tag Assistant) events.

The cursor remembers the last event number reported to the agent, per preview
session. Within one session the number never decreases; a new session token
resets it to 0 once. Every operation reads storage fresh, so callers that
awaited an extraction routine never write back a value captured before it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .storage import LocalStorage, StorageKeys

_LOGGER = logging.getLogger("mcp.datalayer.extension.gtm")


@dataclass(frozen=True, slots=True)
class CursorState:
    last_event_number: int = 0
    session_token: str | None = None


def event_number(event: Any) -> int | None:
    if not isinstance(event, dict):
        return None
    raw = event.get("eventNumber", event.get("number"))
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class GtmPreviewCursor:
    def __init__(self, storage: LocalStorage) -> None:
        self._storage = storage

    def read(self) -> CursorState:
        data = self._storage.get_many(StorageKeys.LAST_EVENT_NUMBER, StorageKeys.PREVIEW_SESSION)
        try:
            last = max(0, int(data.get(StorageKeys.LAST_EVENT_NUMBER) or 0))
        except (TypeError, ValueError):
            last = 0
        token = data.get(StorageKeys.PREVIEW_SESSION)
        return CursorState(last_event_number=last, session_token=str(token) if token else None)

    def advance(self, session_token: str | None, number: int) -> CursorState:
        current = self.read()
        if session_token and session_token != current.session_token:
            _LOGGER.info("new GTM preview session %s (was %s); cursor reset", session_token, current.session_token)
            base = CursorState(last_event_number=0, session_token=session_token)
        else:
            base = current
        updated = CursorState(
            last_event_number=max(base.last_event_number, int(number)),
            session_token=base.session_token,
        )
        if updated != current:
            self._storage.set(
                **{
                    StorageKeys.LAST_EVENT_NUMBER: updated.last_event_number,
                    StorageKeys.PREVIEW_SESSION: updated.session_token,
                }
            )
        return updated

    def select_new(self, snapshot: dict[str, Any]) -> tuple[list[dict[str, Any]], CursorState]:
        """Return events numbered above the cursor and the advanced cursor."""
        token = snapshot.get("sessionToken") or None
        raw_events = snapshot.get("events")
        events = [e for e in raw_events if event_number(e) is not None] if isinstance(raw_events, list) else []
        events.sort(key=lambda e: event_number(e) or 0)

        current = self.read()
        since = 0 if token and token != current.session_token else current.last_event_number
        fresh = [e for e in events if (event_number(e) or 0) > since]
        high = max((event_number(e) or 0 for e in fresh), default=since)
        return fresh, self.advance(token, high)


__all__ = ["CursorState", "GtmPreviewCursor", "event_number"]
