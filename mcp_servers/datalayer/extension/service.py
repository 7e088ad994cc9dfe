"""Extension runtime: answers relay requests for the attached tab.

Browser specifics (tab lookup, running an extraction routine inside the page)
live behind `TabHost`; everything else (attachment, hit buffers, the GTM
preview cursor, the relay connection) is owned here and passed by reference.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from ..protocol import MessageKind, response_message
from .attachment import AttachmentRecord, AttachmentState
from .connection import DEFAULT_WS_URL, ConnectionManager, ReconnectPolicy
from .gtm_cursor import GtmPreviewCursor
from .hits import MAX_HITS_PER_PAGE, HitBuffers, classify_hit
from .storage import LocalStorage, StorageKeys

_LOGGER = logging.getLogger("mcp.datalayer.extension")

NO_TAB_ATTACHED = (
    "No tab attached. Ask the human to attach a tab by opening the extension and clicking the attach button."
)
TAB_GONE = "Attached tab no longer exists. Ask the human to attach a tab again."
UNSUPPORTED_REQUEST = "Unsupported request type"

# In-page extraction routine run for each pass-through kind.
ROUTINES: dict[MessageKind, str] = {
    MessageKind.DATALAYER: "extractDataLayer",
    MessageKind.NEW_GTM_PREVIEW_EVENTS: "extractGtmPreviewEvents",
    MessageKind.SCHEMA_MARKUP: "extractSchemaMarkup",
    MessageKind.META_TAGS: "extractMetaTags",
    MessageKind.CRAWLABILITY_AUDIT: "auditCrawlability",
    MessageKind.GTM_CONTAINER_IDS: "extractGtmContainerIds",
}


class TabHost(Protocol):
    """Browser-facing collaborator (chrome.tabs / chrome.scripting equivalent)."""

    async def tab_exists(self, tab_id: int) -> bool: ...

    async def execute(self, tab_id: int, routine: str) -> Any: ...


class ExtensionService:
    def __init__(
        self,
        storage: LocalStorage,
        host: TabHost,
        url: str = DEFAULT_WS_URL,
        *,
        policy: ReconnectPolicy | None = None,
        origin: str | None = None,
        hits_cap: int = MAX_HITS_PER_PAGE,
    ) -> None:
        self.storage = storage
        self.host = host
        self.attachment = AttachmentState(storage)
        self.hits = HitBuffers(hits_cap)
        self.cursor = GtmPreviewCursor(storage)
        self.connection = ConnectionManager(
            url,
            on_message=self.handle_message,
            policy=policy,
            origin=origin,
            on_ack=self._on_ack,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle + user actions
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.connection.connect()

    async def shutdown(self) -> None:
        await self.connection.cleanup()

    async def attach(self, tab_id: int, title: str = "") -> AttachmentRecord:
        record = self.attachment.attach(tab_id, title)
        # Attaching is what starts the conversation with the relay.
        await self.connection.connect()
        return record

    def detach(self) -> None:
        self.attachment.detach()

    def status(self) -> dict[str, Any]:
        record = self.attachment.current()
        return {
            "attachedTabInfo": record.to_json() if record else None,
            "connection": self.connection.snapshot().to_json(),
            "activeServerInstanceId": self.storage.get(StorageKeys.ACTIVE_SERVER_INSTANCE),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Browser events
    # ─────────────────────────────────────────────────────────────────────────

    def on_tab_removed(self, tab_id: int) -> None:
        self.hits.on_tab_removed(tab_id)
        self.attachment.on_tab_closed(tab_id)

    def on_navigation_started(self, tab_id: int, *, frame_id: int = 0, url: str | None = None) -> None:
        if frame_id != 0:
            return  # sub-frame navigations keep the page's context
        _LOGGER.debug("tab %s navigating to %s; clearing hits", tab_id, url)
        self.hits.on_navigation(tab_id)

    def on_request_observed(self, tab_id: int, url: str, body: str | None = None) -> int:
        if tab_id < 0:
            return 0  # not associated with a tab (e.g. service worker fetches)
        records = classify_hit(url, body)
        for family, event in records:
            self.hits.record(family, tab_id, event)
        return len(records)

    # ─────────────────────────────────────────────────────────────────────────
    # Relay requests
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_message(self, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")
        request_id = msg.get("requestId")
        kind = MessageKind.from_request_type(mtype)
        if kind is None:
            if isinstance(mtype, str) and mtype.startswith("REQUEST_"):
                _LOGGER.warning("unsupported request type=%s", mtype)
                await self.connection.send(
                    {
                        "type": f"{mtype[len('REQUEST_'):]}_RESPONSE",
                        "requestId": request_id,
                        "payload": {"error": f"{UNSUPPORTED_REQUEST}: {mtype}"},
                    }
                )
            else:
                _LOGGER.debug("ignoring relay message type=%s", mtype)
            return

        payload = await self.build_payload(kind)
        await self.connection.send(response_message(kind, str(request_id), payload))

    async def build_payload(self, kind: MessageKind) -> dict[str, Any]:
        record = self.attachment.current()
        if record is None:
            return {"error": NO_TAB_ATTACHED}
        tab_id = record.tab_id

        try:
            exists = await self.host.tab_exists(tab_id)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("tab lookup failed tab=%s: %s", tab_id, exc)
            exists = False
        if not exists:
            self.attachment.on_tab_closed(tab_id)
            self.hits.on_tab_removed(tab_id)
            return {"error": TAB_GONE}

        if kind is MessageKind.GA4_HITS:
            hits = self.hits.ga4.read(tab_id)
            return {"hits": hits, "tabId": tab_id, "count": len(hits)}
        if kind is MessageKind.META_PIXEL_HITS:
            hits = self.hits.meta_pixel.read(tab_id)
            return {"hits": hits, "tabId": tab_id, "count": len(hits)}

        result = await self._run(tab_id, ROUTINES[kind])
        if "error" in result:
            return result
        if kind is MessageKind.NEW_GTM_PREVIEW_EVENTS:
            return self._gtm_payload(result)
        return result

    async def _run(self, tab_id: int, routine: str) -> dict[str, Any]:
        try:
            result = await self.host.execute(tab_id, routine)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("routine %s failed on tab=%s: %s", routine, tab_id, exc)
            return {"error": f"Failed to execute script: {exc}"}
        if isinstance(result, dict):
            return result
        return {"result": result}

    def _gtm_payload(self, snapshot: dict[str, Any]) -> dict[str, Any]:
        # select_new reads the cursor now, after the extraction await, not before it.
        fresh, state = self.cursor.select_new(snapshot)
        events = snapshot.get("events")
        return {
            "events": fresh,
            "totalEvents": len(events) if isinstance(events, list) else 0,
            "newEvents": len(fresh),
            "lastEventNumber": state.last_event_number,
            "sessionToken": state.session_token,
            "cached": bool(snapshot.get("cached")),
            **({"url": snapshot["url"]} if "url" in snapshot else {}),
        }

    def _on_ack(self, msg: dict[str, Any]) -> None:
        self.storage.set(
            **{
                StorageKeys.ACTIVE_SERVER_INSTANCE: msg.get("serverInstanceId"),
                StorageKeys.ACTIVE_SERVER_STARTED_AT: msg.get("serverStartedAt"),
            }
        )


__all__ = ["NO_TAB_ATTACHED", "ROUTINES", "TAB_GONE", "ExtensionService", "TabHost"]
