"""Tool name -> (handler, requires_relay) dispatch table."""

from __future__ import annotations

import logging
import os
from contextlib import suppress
from typing import TYPE_CHECKING, Any

from .types import ToolHandler, ToolResult

if TYPE_CHECKING:
    from ..relay import ExtensionRelay

logger = logging.getLogger("mcp.datalayer.registry")


def _connect_grace_s() -> float:
    try:
        val = float(os.environ.get("MCP_RELAY_CONNECT_TIMEOUT") or 2.0)
    except Exception:
        val = 2.0
    return max(0.0, min(val, 15.0))


class ToolRegistry:
    """Registry for tool handlers."""

    def __init__(self) -> None:
        # name -> (handler, requires_relay)
        self._handlers: dict[str, tuple[ToolHandler, bool]] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        requires_relay: bool = True,
    ) -> None:
        self._handlers[name] = (handler, requires_relay)

    def register_many(self, handlers: dict[str, tuple[ToolHandler, bool]]) -> None:
        self._handlers.update(handlers)

    def get(self, name: str) -> tuple[ToolHandler, bool] | None:
        """Get handler and its relay requirement."""
        return self._handlers.get(name)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, name: str, relay: ExtensionRelay, arguments: dict[str, Any]) -> ToolResult:
        """
        Dispatch tool call to appropriate handler.

        Relay-backed tools get a short grace period for the extension to connect,
        which avoids "first call fails" races right after server startup. The
        handler itself still reports a missing connection.

        Raises:
            KeyError: If tool not found
        """
        handler_info = self._handlers.get(name)
        if handler_info is None:
            raise KeyError(f"Unknown tool: {name}")

        handler, requires_relay = handler_info
        if requires_relay and not relay.is_connected():
            grace = _connect_grace_s()
            if grace > 0:
                logger.info("tool=%s waiting up to %.1fs for extension connection", name, grace)
                with suppress(Exception):
                    relay.wait_for_connection(timeout=grace)

        return handler(relay, arguments)

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers.keys())

    def __len__(self) -> int:
        return len(self._handlers)


def create_default_registry() -> ToolRegistry:
    """Create registry with all handlers."""
    from .handlers import ALL_HANDLERS

    registry = ToolRegistry()
    registry.register_many(ALL_HANDLERS)
    return registry
