from __future__ import annotations

import asyncio
import socket
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from mcp_servers.datalayer.config import RelayConfig
from mcp_servers.datalayer.errors import NotLeaderError, RemoteError
from mcp_servers.datalayer.extension.service import NO_TAB_ATTACHED, TAB_GONE, ExtensionService
from mcp_servers.datalayer.extension.storage import LocalStorage, StorageKeys
from mcp_servers.datalayer.instance_lock import InstanceRegistry
from mcp_servers.datalayer.protocol import MessageKind
from mcp_servers.datalayer.relay import ExtensionRelay

EXT_ORIGIN = "chrome-extension://testextension"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _start_relay(lock_path: Path) -> tuple[ExtensionRelay, InstanceRegistry]:
    cfg = RelayConfig(host="127.0.0.1", port=_free_port(), lock_path=str(lock_path), port_reclaim=False)
    registry = InstanceRegistry(path=lock_path, watch=False)
    registry.claim()
    relay = ExtensionRelay(cfg, registry)
    relay.start(wait_timeout=5.0, require_listening=True)
    return relay, registry


class FakeTabHost:
    def __init__(self) -> None:
        self.tabs: dict[int, dict[str, Any]] = {}

    async def tab_exists(self, tab_id: int) -> bool:
        return tab_id in self.tabs

    async def execute(self, tab_id: int, routine: str) -> Any:
        return self.tabs[tab_id][routine]


class ExtensionThread:
    """Hosts an ExtensionService on its own event loop, like a browser's service worker."""

    def __init__(self, service: ExtensionService) -> None:
        self.service = service
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()

    def run(self, coro, timeout: float = 5.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=timeout)

    def call(self, fn, *args, **kwargs):
        async def _invoke():
            return fn(*args, **kwargs)

        return self.run(_invoke())

    def close(self) -> None:
        try:
            self.run(self.service.shutdown())
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self.thread.join(timeout=2.0)
            self.loop.close()


def _extension(relay: ExtensionRelay, host: FakeTabHost, storage: LocalStorage | None = None) -> ExtensionThread:
    svc = ExtensionService(
        storage or LocalStorage(),
        host,
        f"ws://127.0.0.1:{relay.bound_port}",
        origin=EXT_ORIGIN,
    )
    return ExtensionThread(svc)


def test_happy_path_returns_live_datalayer(tmp_path: Path) -> None:
    relay, registry = _start_relay(tmp_path / "active.json")
    host = FakeTabHost()
    host.tabs[42] = {"extractDataLayer": {"dataLayer": [{"event": "page_view"}], "url": "https://example.com"}}
    storage = LocalStorage(tmp_path / "ext.json")
    ext = _extension(relay, host, storage)
    try:
        ext.run(ext.service.attach(42, "Example"))
        assert relay.wait_for_connection(timeout=3.0)

        result = relay.call(MessageKind.DATALAYER)

        assert result.payload == {"dataLayer": [{"event": "page_view"}], "url": "https://example.com"}
        assert result.meta()["dataLayerLength"] == 1
        deadline = time.time() + 3.0
        while time.time() < deadline and storage.get(StorageKeys.ACTIVE_SERVER_INSTANCE) is None:
            time.sleep(0.02)
        assert storage.get(StorageKeys.ACTIVE_SERVER_INSTANCE) == registry.instance_id
        assert ext.call(ext.service.status)["attachedTabInfo"] == {"id": 42, "title": "Example"}
    finally:
        ext.close()
        relay.stop()


def test_unattached_extension_reports_promptly(tmp_path: Path) -> None:
    relay, _registry = _start_relay(tmp_path / "active.json")
    ext = _extension(relay, FakeTabHost())
    try:
        ext.run(ext.service.start())
        assert relay.wait_for_connection(timeout=3.0)

        started = time.monotonic()
        with pytest.raises(RemoteError) as excinfo:
            relay.call(MessageKind.DATALAYER)
        assert time.monotonic() - started < 1.0
        assert str(excinfo.value) == NO_TAB_ATTACHED
    finally:
        ext.close()
        relay.stop()


def test_closed_tab_detaches_and_reports(tmp_path: Path) -> None:
    relay, _registry = _start_relay(tmp_path / "active.json")
    host = FakeTabHost()
    host.tabs[7] = {}
    ext = _extension(relay, host)
    try:
        ext.run(ext.service.attach(7, "Soon gone"))
        assert relay.wait_for_connection(timeout=3.0)
        del host.tabs[7]

        with pytest.raises(RemoteError) as excinfo:
            relay.call(MessageKind.META_TAGS)
        assert str(excinfo.value) == TAB_GONE
        assert ext.call(ext.service.attachment.current) is None
    finally:
        ext.close()
        relay.stop()


def test_hits_are_page_scoped(tmp_path: Path) -> None:
    relay, _registry = _start_relay(tmp_path / "active.json")
    host = FakeTabHost()
    host.tabs[7] = {}
    ext = _extension(relay, host)
    try:
        ext.run(ext.service.attach(7))
        assert relay.wait_for_connection(timeout=3.0)
        for name in ("page_view", "scroll", "click"):
            ext.call(
                ext.service.on_request_observed,
                7,
                f"https://www.google-analytics.com/g/collect?v=2&tid=G-T1&en={name}",
            )

        result = relay.call(MessageKind.GA4_HITS)
        assert [h["eventName"] for h in result.payload["hits"]] == ["page_view", "scroll", "click"]
        assert result.meta()["hitsCount"] == 3

        ext.call(ext.service.on_navigation_started, 7, frame_id=0, url="https://example.com/next")
        result = relay.call(MessageKind.GA4_HITS)
        assert result.payload == {"hits": [], "tabId": 7, "count": 0}
    finally:
        ext.close()
        relay.stop()


def test_gtm_preview_reports_each_event_once(tmp_path: Path) -> None:
    relay, _registry = _start_relay(tmp_path / "active.json")
    host = FakeTabHost()
    host.tabs[9] = {
        "extractGtmPreviewEvents": {
            "sessionToken": "cb1",
            "events": [{"eventNumber": n, "name": f"e{n}"} for n in (1, 2, 3)],
        }
    }
    ext = _extension(relay, host)
    try:
        ext.run(ext.service.attach(9))
        assert relay.wait_for_connection(timeout=3.0)

        first = relay.call(MessageKind.NEW_GTM_PREVIEW_EVENTS)
        assert first.payload["newEvents"] == 3
        second = relay.call(MessageKind.NEW_GTM_PREVIEW_EVENTS)
        assert second.payload["newEvents"] == 0
        assert second.payload["lastEventNumber"] == 3

        host.tabs[9]["extractGtmPreviewEvents"] = {
            "sessionToken": "cb2",
            "events": [{"eventNumber": 1}, {"eventNumber": 2}],
        }
        third = relay.call(MessageKind.NEW_GTM_PREVIEW_EVENTS)
        assert third.payload["newEvents"] == 2
        assert third.payload["sessionToken"] == "cb2"
    finally:
        ext.close()
        relay.stop()


def test_stale_instance_yields_to_newer(tmp_path: Path) -> None:
    lock = tmp_path / "active.json"
    old_relay, old_registry = _start_relay(lock)
    new_relay, _new_registry = _start_relay(lock)
    host = FakeTabHost()
    host.tabs[1] = {"extractMetaTags": {"title": "Hello"}}
    ext = _extension(new_relay, host)
    try:
        ext.run(ext.service.attach(1))
        assert new_relay.wait_for_connection(timeout=3.0)

        with pytest.raises(NotLeaderError) as excinfo:
            old_relay.call(MessageKind.META_TAGS)
        assert old_registry.instance_id in str(excinfo.value)

        assert new_relay.call(MessageKind.META_TAGS).payload == {"title": "Hello"}
    finally:
        ext.close()
        old_relay.stop()
        new_relay.stop()
