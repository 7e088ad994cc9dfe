"""Tool schema definitions."""

from __future__ import annotations

from typing import Any

from ..protocol import MessageKind

_NO_ARGUMENTS: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {},
    "additionalProperties": False,
}


def _extraction_tool(kind: MessageKind) -> dict[str, Any]:
    info = kind.info
    return {
        "name": info.tool_name,
        "description": f"{info.description}\n\nTimeout: {int(info.timeout_s)}s. Takes no arguments.",
        "inputSchema": dict(_NO_ARGUMENTS),
    }


EXTRACTION_TOOLS: list[dict[str, Any]] = [_extraction_tool(kind) for kind in MessageKind]

RELAY_STATUS_TOOL: dict[str, Any] = {
    "name": "getRelayStatus",
    "description": """Report the local relay state: whether this server instance is the active one,
whether the browser extension is connected and healthy, and the listening port.

RESPONSE EXAMPLE:
{
  "listening": true,
  "port": 57321,
  "connected": true,
  "healthy": true,
  "activeInstance": true,
  "instance": {"instanceId": "...", "pid": 4242, "startedAt": 1718000000000}
}""",
    "inputSchema": dict(_NO_ARGUMENTS),
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [*EXTRACTION_TOOLS, RELAY_STATUS_TOOL]

__all__ = ["EXTRACTION_TOOLS", "RELAY_STATUS_TOOL", "TOOL_DEFINITIONS"]
