from __future__ import annotations

from pathlib import Path

import pytest

from mcp_servers.datalayer.config import DEFAULT_RELAY_PORT, LOCK_BASENAME, RelayConfig
from mcp_servers.datalayer.errors import MalformedMessage
from mcp_servers.datalayer.protocol import (
    MessageKind,
    connection_ack,
    error_message,
    parse_message,
    request_message,
)
from mcp_servers.datalayer.relay import origin_allowed


def test_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MCP_RELAY_HOST",
        "MCP_RELAY_PORT",
        "MCP_INSTANCE_LOCK",
        "MCP_SERVER_VERSION",
        "MCP_RELAY_KEEPALIVE",
        "MCP_RELAY_RECLAIM_PORT",
        "EXTENSION_ORIGIN",
    ):
        monkeypatch.delenv(name, raising=False)
    cfg = RelayConfig.from_env()
    assert cfg.host == "127.0.0.1"
    assert cfg.port == DEFAULT_RELAY_PORT == 57321
    assert Path(cfg.lock_path).name == LOCK_BASENAME
    assert cfg.server_version == "0.1.0"
    assert cfg.port_reclaim is True
    assert cfg.extension_origin is None
    assert cfg.stale_after_s == pytest.approx(40.0)


def test_config_parses_and_clamps_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MCP_RELAY_PORT", "not-a-port")
    monkeypatch.setenv("MCP_RELAY_KEEPALIVE", "5")
    monkeypatch.setenv("MCP_RELAY_HEALTH_INTERVAL", "-3")
    monkeypatch.setenv("MCP_RELAY_RECLAIM_PORT", "off")
    monkeypatch.setenv("MCP_INSTANCE_LOCK", str(tmp_path / "lock.json"))
    monkeypatch.setenv("EXTENSION_ORIGIN", "chrome-extension://abc")
    cfg = RelayConfig.from_env()
    assert cfg.port == DEFAULT_RELAY_PORT
    assert cfg.keepalive_period_s == 5.0
    assert cfg.stale_after_s == 10.0
    assert cfg.health_check_interval_s == pytest.approx(0.05)
    assert cfg.port_reclaim is False
    assert cfg.lock_path == str(tmp_path / "lock.json")
    assert cfg.extension_origin == "chrome-extension://abc"


def test_message_kind_tags_are_exhaustive() -> None:
    for kind in MessageKind:
        assert kind.request_type == f"REQUEST_{kind.value}"
        assert kind.response_type == f"{kind.value}_RESPONSE"
        assert MessageKind.from_request_type(kind.request_type) is kind
        assert MessageKind.from_response_type(kind.response_type) is kind
        assert 15.0 <= kind.timeout_s <= 30.0
        assert kind.info.tool_name

    assert MessageKind.from_request_type("REQUEST_NOPE") is None
    assert MessageKind.from_response_type(None) is None
    assert MessageKind.DATALAYER.timeout_s == 30.0
    assert MessageKind.GA4_HITS.timeout_s == 15.0


def test_summaries_count_items() -> None:
    assert MessageKind.DATALAYER.info.summarize({"dataLayer": [1, 2, 3]}) == {"dataLayerLength": 3}
    assert MessageKind.GA4_HITS.info.summarize({"hits": "bogus"}) == {"hitsCount": 0}
    gtm = MessageKind.NEW_GTM_PREVIEW_EVENTS.info.summarize({"events": [{}], "totalEvents": 4, "newEvents": 1})
    assert gtm == {"totalEvents": 4, "newEvents": 1, "cached": False, "eventsCount": 1}
    assert MessageKind.META_TAGS.info.summarize({"title": "x"}) == {}


def test_builders_shape() -> None:
    req = request_message(MessageKind.META_TAGS, "abc")
    assert req["type"] == "REQUEST_META_TAGS"
    assert req["requestId"] == "abc"
    assert isinstance(req["timestamp"], int)

    ack = connection_ack(server_version="0.1.0", instance_id="i-1", started_at=123)
    assert ack["type"] == "CONNECTION_ACK"
    assert ack["serverInstanceId"] == "i-1"
    assert ack["serverStartedAt"] == 123

    err = error_message("boom")
    assert err["type"] == "ERROR" and err["error"] == "boom"


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"', b"\xff\xfe"])
def test_parse_message_rejects_non_objects(raw: str | bytes) -> None:
    with pytest.raises(MalformedMessage):
        parse_message(raw)


def test_parse_message_accepts_bytes() -> None:
    assert parse_message(b'{"type": "KEEPALIVE_PING"}') == {"type": "KEEPALIVE_PING"}


@pytest.mark.parametrize(
    ("origin", "allowed"),
    [
        (None, True),
        ("", True),
        ("chrome-extension://aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa", True),
        ("moz-extension://0b1c2d3e-uuid", True),
        ("http://localhost", True),
        ("https://localhost", True),
        ("http://localhost:3000", True),
        ("http://127.0.0.1:8080", True),
        ("http://localhost.evil.com", False),
        ("https://example.com", False),
        ("null", False),
    ],
)
def test_origin_table(origin: str | None, allowed: bool) -> None:
    assert origin_allowed(origin) is allowed


def test_origin_explicit_extension_origin() -> None:
    assert origin_allowed("https://tools.internal", extension_origin="https://tools.internal") is True
    assert origin_allowed("https://tools.internal") is False
