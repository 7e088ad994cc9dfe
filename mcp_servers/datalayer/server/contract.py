"""Server identity and the tool contract advertised by `initialize` and `tools/list`."""

from __future__ import annotations

import os
from typing import Any

from .definitions import TOOL_DEFINITIONS

SERVER_INFO: dict[str, str] = {
    "name": "DataLayerAccessServer",
    "version": (os.environ.get("MCP_SERVER_VERSION") or "0.1.0").strip() or "0.1.0",
}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]
DEFAULT_PROTOCOL_VERSION = LATEST_PROTOCOL_VERSION

CAPABILITIES: dict[str, Any] = {
    "tools": {"listChanged": False},
}

INSTRUCTIONS = (
    "Tools read live state from the browser tab the human attached through the DataLayer extension. "
    "If a tool reports that no tab is attached, ask the human to attach one and retry."
)


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
        "instructions": INSTRUCTIONS,
    }


def tools_list() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS
