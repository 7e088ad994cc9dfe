"""Relay wire protocol.

JSON text frames over one WebSocket:

- server -> extension: {type: "REQUEST_<KIND>", requestId, timestamp}
- extension -> server: {type: "<KIND>_RESPONSE", requestId, payload}
- either direction:    {type: "KEEPALIVE_PING"|"KEEPALIVE_PONG", ts}
- server -> extension: {type: "CONNECTION_ACK", serverVersion, serverInstanceId, serverStartedAt, timestamp}
- server -> extension: {type: "ERROR", error, timestamp}
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import MalformedMessage

KEEPALIVE_PING = "KEEPALIVE_PING"
KEEPALIVE_PONG = "KEEPALIVE_PONG"
CONNECTION_ACK = "CONNECTION_ACK"
ERROR = "ERROR"


def now_ms() -> int:
    return int(time.time() * 1000)


def _list_len(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    return len(value) if isinstance(value, list) else 0


def _no_summary(_payload: dict[str, Any]) -> dict[str, Any]:
    return {}


def _gtm_preview_summary(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "totalEvents": int(payload.get("totalEvents") or 0),
        "newEvents": int(payload.get("newEvents") or 0),
        "cached": bool(payload.get("cached")),
        "eventsCount": _list_len(payload, "events"),
    }


@dataclass(frozen=True, slots=True)
class KindInfo:
    tool_name: str
    description: str
    timeout_s: float
    # Human-readable noun used in timeout messages.
    label: str
    summarize: Callable[[dict[str, Any]], dict[str, Any]] = _no_summary


class MessageKind(str, Enum):
    DATALAYER = "DATALAYER"
    GA4_HITS = "GA4_HITS"
    META_PIXEL_HITS = "META_PIXEL_HITS"
    NEW_GTM_PREVIEW_EVENTS = "NEW_GTM_PREVIEW_EVENTS"
    SCHEMA_MARKUP = "SCHEMA_MARKUP"
    META_TAGS = "META_TAGS"
    CRAWLABILITY_AUDIT = "CRAWLABILITY_AUDIT"
    GTM_CONTAINER_IDS = "GTM_CONTAINER_IDS"

    @property
    def info(self) -> KindInfo:
        return KIND_INFO[self]

    @property
    def request_type(self) -> str:
        return f"REQUEST_{self.value}"

    @property
    def response_type(self) -> str:
        return f"{self.value}_RESPONSE"

    @property
    def timeout_s(self) -> float:
        return self.info.timeout_s

    @classmethod
    def from_request_type(cls, mtype: Any) -> MessageKind | None:
        return _BY_REQUEST_TYPE.get(mtype) if isinstance(mtype, str) else None

    @classmethod
    def from_response_type(cls, mtype: Any) -> MessageKind | None:
        return _BY_RESPONSE_TYPE.get(mtype) if isinstance(mtype, str) else None


KIND_INFO: dict[MessageKind, KindInfo] = {
    MessageKind.DATALAYER: KindInfo(
        tool_name="getDataLayer",
        description=(
            "Capture and return the full contents of window.dataLayer from the human's attached browser tab, "
            "allowing inspection of all GTM events."
        ),
        timeout_s=30.0,
        label="dataLayer",
        summarize=lambda p: {"dataLayerLength": _list_len(p, "dataLayer")},
    ),
    MessageKind.GA4_HITS: KindInfo(
        tool_name="getGa4Hits",
        description=(
            "Get all GA4 hits (network requests) recorded from the current page. "
            "Recording is automatic and resets on page navigation."
        ),
        timeout_s=15.0,
        label="GA4 hits",
        summarize=lambda p: {"hitsCount": _list_len(p, "hits")},
    ),
    MessageKind.META_PIXEL_HITS: KindInfo(
        tool_name="getMetaPixelHits",
        description=(
            "Get all Meta Pixel (Facebook Pixel) hits recorded from the current page. "
            "Recording is automatic and resets on page navigation."
        ),
        timeout_s=15.0,
        label="Meta Pixel hits",
        summarize=lambda p: {"hitsCount": _list_len(p, "hits")},
    ),
    MessageKind.NEW_GTM_PREVIEW_EVENTS: KindInfo(
        tool_name="getNewGTMPreviewEvents",
        description=(
            "Get new GTM preview events from Google Tag Assistant that have occurred since the last call. "
            "Returns events with numbers greater than the last reported event. "
            "(Requires that a GTM preview is active in the human's browser)"
        ),
        timeout_s=15.0,
        label="GTM preview data",
        summarize=_gtm_preview_summary,
    ),
    MessageKind.SCHEMA_MARKUP: KindInfo(
        tool_name="getSchemaMarkup",
        description=(
            "Extract and return all schema markup (JSON-LD and microdata) from the human's attached browser tab, "
            "including structured data for SEO and rich snippets."
        ),
        timeout_s=30.0,
        label="schema markup",
        summarize=lambda p: {
            "jsonLdCount": _list_len(p, "jsonLd"),
            "microdataCount": _list_len(p, "microdataStructured"),
        },
    ),
    MessageKind.META_TAGS: KindInfo(
        tool_name="getMetaTags",
        description=(
            "Extract and return all meta tags from the current page including title, meta description, "
            "Open Graph, Twitter Card, and other SEO-related meta information."
        ),
        timeout_s=30.0,
        label="meta tags",
    ),
    MessageKind.CRAWLABILITY_AUDIT: KindInfo(
        tool_name="checkCrawlability",
        description=(
            "Audit the current page in the human's attached browser tab: meta robots, X-Robots-Tag headers, "
            "robots.txt sitemaps, and whether the page appears in a sitemap."
        ),
        timeout_s=30.0,
        label="crawlability audit",
    ),
    MessageKind.GTM_CONTAINER_IDS: KindInfo(
        tool_name="getGTMContainerIds",
        description=(
            "Extract and return all (normally just one) Google Tag Manager container IDs installed on the "
            "current page, using the window.google_tag_manager object."
        ),
        timeout_s=15.0,
        label="GTM container IDs",
        summarize=lambda p: {"containerCount": _list_len(p, "containerIds")},
    ),
}

_BY_REQUEST_TYPE: dict[str, MessageKind] = {k.request_type: k for k in MessageKind}
_BY_RESPONSE_TYPE: dict[str, MessageKind] = {k.response_type: k for k in MessageKind}


# ─────────────────────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────────────────────


def request_message(kind: MessageKind, request_id: str) -> dict[str, Any]:
    return {"type": kind.request_type, "requestId": request_id, "timestamp": now_ms()}


def response_message(kind: MessageKind, request_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"type": kind.response_type, "requestId": request_id, "payload": payload}


def connection_ack(*, server_version: str, instance_id: str, started_at: int) -> dict[str, Any]:
    return {
        "type": CONNECTION_ACK,
        "serverVersion": server_version,
        "serverInstanceId": instance_id,
        "serverStartedAt": started_at,
        "timestamp": now_ms(),
    }


def keepalive_ping() -> dict[str, Any]:
    return {"type": KEEPALIVE_PING, "ts": now_ms()}


def keepalive_pong() -> dict[str, Any]:
    return {"type": KEEPALIVE_PONG, "ts": now_ms()}


def error_message(error: str) -> dict[str, Any]:
    return {"type": ERROR, "error": error, "timestamp": now_ms()}


def encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def parse_message(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        msg = json.loads(raw)
    except ValueError as exc:
        raise MalformedMessage(f"invalid JSON: {exc}") from exc
    if not isinstance(msg, dict):
        raise MalformedMessage("message must be a JSON object")
    return msg


__all__ = [
    "CONNECTION_ACK",
    "ERROR",
    "KEEPALIVE_PING",
    "KEEPALIVE_PONG",
    "KIND_INFO",
    "KindInfo",
    "MessageKind",
    "connection_ack",
    "encode",
    "error_message",
    "keepalive_ping",
    "keepalive_pong",
    "now_ms",
    "parse_message",
    "request_message",
    "response_message",
]
