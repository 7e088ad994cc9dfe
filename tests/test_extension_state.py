from __future__ import annotations

import json
from pathlib import Path

import pytest

from mcp_servers.datalayer.extension.attachment import AttachmentState
from mcp_servers.datalayer.extension.gtm_cursor import GtmPreviewCursor, event_number
from mcp_servers.datalayer.extension.hits import (
    GA4,
    MAX_HITS_PER_PAGE,
    META_PIXEL,
    HitBuffers,
    HitRingBuffer,
    classify_hit,
)
from mcp_servers.datalayer.extension.storage import LocalStorage, StorageKeys

# ═══════════════════════════════════════════════════════════════════════════════
# Storage
# ═══════════════════════════════════════════════════════════════════════════════


def test_storage_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "ext" / "storage.json"
    LocalStorage(path).set(a=1, b="two")
    again = LocalStorage(path)
    assert again.get("a") == 1
    assert again.get_many("a", "b", "missing") == {"a": 1, "b": "two"}
    again.remove("a")
    assert LocalStorage(path).snapshot() == {"b": "two"}


def test_storage_corrupt_file_reads_empty(tmp_path: Path) -> None:
    path = tmp_path / "storage.json"
    path.write_text("{nope", encoding="utf-8")
    store = LocalStorage(path)
    assert store.snapshot() == {}
    assert store.set(x=1) is True
    assert json.loads(path.read_text(encoding="utf-8")) == {"x": 1}


# ═══════════════════════════════════════════════════════════════════════════════
# Attachment
# ═══════════════════════════════════════════════════════════════════════════════


def test_attachment_lifecycle() -> None:
    state = AttachmentState(LocalStorage())
    assert state.current() is None

    record = state.attach(42, "Example")
    assert record.to_json() == {"id": 42, "title": "Example"}
    assert state.current() == record

    assert state.on_tab_closed(7) is False
    assert state.current() == record
    assert state.on_tab_closed(42) is True
    assert state.current() is None


def test_attachment_ignores_garbage_tab_id() -> None:
    storage = LocalStorage()
    state = AttachmentState(storage)
    storage.set(**{StorageKeys.TAB_ID: True})
    assert state.current() is None
    storage.set(**{StorageKeys.TAB_ID: "abc"})
    assert state.current() is None
    storage.set(**{StorageKeys.TAB_ID: "12"})
    assert state.current().tab_id == 12


# ═══════════════════════════════════════════════════════════════════════════════
# Hit buffers
# ═══════════════════════════════════════════════════════════════════════════════


def test_ring_buffer_keeps_most_recent() -> None:
    ring = HitRingBuffer(cap=3)
    for i in range(5):
        ring.record(1, {"n": i})
    assert [h["n"] for h in ring.read(1)] == [2, 3, 4]
    assert ring.read(2) == []

    ring.clear(1)
    ring.record(1, {"n": 99})
    assert ring.read(1) == [{"n": 99}]


def test_ring_buffer_default_cap_and_validation() -> None:
    ring = HitRingBuffer()
    for i in range(MAX_HITS_PER_PAGE + 10):
        ring.record(5, {"n": i})
    hits = ring.read(5)
    assert len(hits) == MAX_HITS_PER_PAGE == 50
    assert hits[0]["n"] == 10

    with pytest.raises(ValueError):
        HitRingBuffer(cap=0)


def test_navigation_clears_both_families_for_that_tab_only() -> None:
    buffers = HitBuffers(cap=10)
    buffers.record(GA4, 1, {"n": 1})
    buffers.record(META_PIXEL, 1, {"n": 2})
    buffers.record(GA4, 2, {"n": 3})

    buffers.on_navigation(1)

    assert buffers.ga4.read(1) == []
    assert buffers.meta_pixel.read(1) == []
    assert buffers.ga4.read(2) == [{"n": 3}]
    with pytest.raises(KeyError):
        buffers.family("adobe")


def test_classify_ga4_single_hit() -> None:
    url = (
        "https://region1.google-analytics.com/g/collect?v=2&tid=G-ABC123&cid=555.666&en=page_view"
        "&dl=https%3A%2F%2Fexample.com%2F&dt=Example&ep.section=news&epn.value=3&up.plan=pro"
    )
    records = classify_hit(url, now_ms=1000)
    assert len(records) == 1
    family, event = records[0]
    assert family == GA4
    assert event["timestamp"] == 1000
    assert event["measurementId"] == "G-ABC123"
    assert event["eventName"] == "page_view"
    assert event["clientId"] == "555.666"
    assert event["pageLocation"] == "https://example.com/"
    assert event["pageTitle"] == "Example"
    assert event["eventParams"] == {"section": "news", "value": "3"}
    assert event["userProperties"] == {"plan": "pro"}


def test_classify_ga4_batched_body() -> None:
    url = "https://www.google-analytics.com/g/collect?v=2&tid=G-XYZ&cid=1.2"
    body = "en=scroll&epn.percent_scrolled=90\nen=click&ep.link_url=https%3A%2F%2Fa.b\n"
    records = classify_hit(url, body)
    assert [e["eventName"] for _, e in records] == ["scroll", "click"]
    assert all(e["measurementId"] == "G-XYZ" for _, e in records)
    assert records[0][1]["eventParams"] == {"percent_scrolled": "90"}


def test_classify_server_side_gtm_endpoint_by_tid() -> None:
    records = classify_hit("https://sgtm.example.com/g/collect?v=2&tid=G-SS1&en=purchase")
    assert records and records[0][1]["measurementId"] == "G-SS1"


def test_classify_meta_pixel() -> None:
    url = "https://www.facebook.com/tr/?id=123456&ev=Purchase&dl=https%3A%2F%2Fshop.test%2F&cd[value]=9.99&cd[currency]=EUR"
    records = classify_hit(url)
    assert len(records) == 1
    family, event = records[0]
    assert family == META_PIXEL
    assert event["pixelId"] == "123456"
    assert event["eventName"] == "Purchase"
    assert event["customData"] == {"value": "9.99", "currency": "EUR"}


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/g/collect",
        "https://www.google-analytics.com/collect?v=1&tid=UA-1",
        "https://www.facebook.com/profile",
        "https://connect.facebook.net/en_US/fbevents.js",
        "not a url at all",
    ],
)
def test_classify_ignores_unrelated_requests(url: str) -> None:
    assert classify_hit(url) == []


# ═══════════════════════════════════════════════════════════════════════════════
# GTM preview cursor
# ═══════════════════════════════════════════════════════════════════════════════


def _events(*numbers: int) -> list[dict]:
    return [{"eventNumber": n, "name": f"e{n}"} for n in numbers]


def test_event_number_accepts_both_spellings() -> None:
    assert event_number({"eventNumber": 3}) == 3
    assert event_number({"number": "4"}) == 4
    assert event_number({"number": True}) is None
    assert event_number("x") is None


def test_cursor_reports_only_new_events() -> None:
    cursor = GtmPreviewCursor(LocalStorage())
    fresh, state = cursor.select_new({"sessionToken": "cb1", "events": _events(1, 2, 3)})
    assert [event_number(e) for e in fresh] == [1, 2, 3]
    assert state.last_event_number == 3
    assert state.session_token == "cb1"

    fresh, state = cursor.select_new({"sessionToken": "cb1", "events": _events(1, 2, 3)})
    assert fresh == []
    assert state.last_event_number == 3

    fresh, state = cursor.select_new({"sessionToken": "cb1", "events": _events(3, 5, 4)})
    assert [event_number(e) for e in fresh] == [4, 5]
    assert state.last_event_number == 5


def test_cursor_never_decreases_within_session() -> None:
    cursor = GtmPreviewCursor(LocalStorage())
    cursor.advance("cb1", 10)
    assert cursor.advance("cb1", 4).last_event_number == 10
    assert cursor.advance(None, 2).last_event_number == 10
    assert cursor.read().last_event_number == 10


def test_cursor_resets_once_on_new_session() -> None:
    cursor = GtmPreviewCursor(LocalStorage())
    cursor.advance("cb1", 40)

    fresh, state = cursor.select_new({"sessionToken": "cb2", "events": _events(1, 2)})
    assert [event_number(e) for e in fresh] == [1, 2]
    assert state == cursor.read()
    assert state.session_token == "cb2"
    assert state.last_event_number == 2

    # Same token again: no second reset.
    fresh, _ = cursor.select_new({"sessionToken": "cb2", "events": _events(1, 2)})
    assert fresh == []


def test_cursor_rereads_storage_between_selections() -> None:
    storage = LocalStorage()
    first = GtmPreviewCursor(storage)
    second = GtmPreviewCursor(storage)
    first.advance("cb1", 7)
    # A second writer advanced it meanwhile; the other view must not move it back.
    second.advance("cb1", 9)
    assert first.advance("cb1", 8).last_event_number == 9
