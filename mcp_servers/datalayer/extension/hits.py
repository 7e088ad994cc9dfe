"""Per-tab buffers of observed analytics hits (GA4 and Meta Pixel).

Each family keeps the most recent `MAX_HITS_PER_PAGE` hits per tab. A tab's
buffers are emptied when it starts loading a new document.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Any
from urllib.parse import parse_qsl, urlsplit

MAX_HITS_PER_PAGE = 50

GA4 = "ga4"
META_PIXEL = "meta_pixel"

_GA4_HOSTS = ("google-analytics.com", "analytics.google.com")
_META_HOSTS = ("facebook.com", "facebook.net")


class HitRingBuffer:
    def __init__(self, cap: int = MAX_HITS_PER_PAGE) -> None:
        if cap < 1:
            raise ValueError("cap must be >= 1")
        self.cap = int(cap)
        self._by_tab: dict[int, deque[dict[str, Any]]] = {}

    def record(self, tab_id: int, event: dict[str, Any]) -> None:
        buf = self._by_tab.get(tab_id)
        if buf is None:
            buf = deque(maxlen=self.cap)
            self._by_tab[tab_id] = buf
        buf.append(event)

    def clear(self, tab_id: int) -> None:
        self._by_tab.pop(tab_id, None)

    def read(self, tab_id: int) -> list[dict[str, Any]]:
        return list(self._by_tab.get(tab_id, ()))


class HitBuffers:
    def __init__(self, cap: int = MAX_HITS_PER_PAGE) -> None:
        self.ga4 = HitRingBuffer(cap)
        self.meta_pixel = HitRingBuffer(cap)

    def family(self, name: str) -> HitRingBuffer:
        if name == GA4:
            return self.ga4
        if name == META_PIXEL:
            return self.meta_pixel
        raise KeyError(name)

    def record(self, family: str, tab_id: int, event: dict[str, Any]) -> None:
        self.family(family).record(tab_id, event)

    def on_navigation(self, tab_id: int) -> None:
        # A new document invalidates all prior in-page context, for both families.
        self.ga4.clear(tab_id)
        self.meta_pixel.clear(tab_id)

    def on_tab_removed(self, tab_id: int) -> None:
        self.on_navigation(tab_id)


def _host_matches(host: str, suffixes: tuple[str, ...]) -> bool:
    host = host.lower()
    return any(host == s or host.endswith("." + s) for s in suffixes)


def _ga4_event(url: str, query: str, ts: int) -> dict[str, Any]:
    params = dict(parse_qsl(query, keep_blank_values=True))
    return {
        "timestamp": ts,
        "url": url,
        "measurementId": params.get("tid"),
        "eventName": params.get("en"),
        "clientId": params.get("cid"),
        "pageLocation": params.get("dl"),
        "pageTitle": params.get("dt"),
        "eventParams": {k.split(".", 1)[1]: v for k, v in params.items() if k.startswith(("ep.", "epn."))},
        "userProperties": {k.split(".", 1)[1]: v for k, v in params.items() if k.startswith(("up.", "upn."))},
        "params": params,
    }


def _meta_event(url: str, query: str, ts: int) -> dict[str, Any]:
    params = dict(parse_qsl(query, keep_blank_values=True))
    custom = {k[3:-1]: v for k, v in params.items() if k.startswith("cd[") and k.endswith("]")}
    return {
        "timestamp": ts,
        "url": url,
        "pixelId": params.get("id"),
        "eventName": params.get("ev"),
        "pageLocation": params.get("dl"),
        "customData": custom,
        "params": params,
    }


def classify_hit(url: str, body: str | None = None, *, now_ms: int | None = None) -> list[tuple[str, dict[str, Any]]]:
    """Map one observed request to zero or more `(family, event)` records.

    GA4 batches several events into one POST, one query string per body line;
    each line becomes its own record with the URL's shared parameters merged in.
    """

    try:
        parts = urlsplit(url)
    except ValueError:
        return []
    ts = int(now_ms if now_ms is not None else time.time() * 1000)
    host = parts.hostname or ""

    if parts.path.endswith("/g/collect") and (_host_matches(host, _GA4_HOSTS) or "tid=" in parts.query):
        lines = [ln.strip() for ln in (body or "").splitlines() if ln.strip()]
        if not lines:
            return [(GA4, _ga4_event(url, parts.query, ts))]
        return [(GA4, _ga4_event(url, f"{parts.query}&{ln}" if parts.query else ln, ts)) for ln in lines]

    if _host_matches(host, _META_HOSTS) and parts.path.rstrip("/") == "/tr":
        query = parts.query or (body or "")
        return [(META_PIXEL, _meta_event(url, query, ts))]

    return []


__all__ = [
    "GA4",
    "MAX_HITS_PER_PAGE",
    "META_PIXEL",
    "HitBuffers",
    "HitRingBuffer",
    "classify_hit",
]
