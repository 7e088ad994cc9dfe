"""
Relay status handler.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..types import ToolResult

if TYPE_CHECKING:
    from ...relay import ExtensionRelay


def handle_relay_status(relay: ExtensionRelay, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(relay.status())


STATUS_HANDLERS: dict[str, tuple] = {
    "getRelayStatus": (handle_relay_status, False),
}
