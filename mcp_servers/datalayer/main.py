"""
MCP Server exposing live dataLayer / analytics state from a human-attached browser tab.

Owns the stdio JSON-RPC loop and the relay lifecycle.
Tool dispatch is handled via registry pattern in server/registry.py; the tools
reach the browser through the local WebSocket relay in relay.py.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from typing import Any

from .config import RelayConfig
from .errors import RelayCallError
from .instance_lock import InstanceRegistry
from .relay import ExtensionRelay
from .server.contract import (
    DEFAULT_PROTOCOL_VERSION,
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    initialize_result,
    select_protocol,
    tools_list,
)
from .server.registry import create_default_registry
from .server.types import ToolResult

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("mcp.datalayer")

__all__ = [
    "SUPPORTED_PROTOCOL_VERSIONS",
    "LATEST_PROTOCOL_VERSION",
    "DEFAULT_PROTOCOL_VERSION",
    "McpServer",
    "main",
]


def _write_message(payload: dict[str, Any]) -> None:
    """Emit one newline-delimited JSON-RPC frame on stdout."""
    data = json.dumps(payload, ensure_ascii=False)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read JSON-RPC message from stdin. Returns None on EOF, {} on a blank line."""
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line.decode())
    except ValueError as exc:
        logger.warning("invalid JSON-RPC frame: %s", exc)
        _write_message({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
        return {}
    if os.environ.get("MCP_TRACE"):
        logger.info("recv %s", msg)
    return msg if isinstance(msg, dict) else {}


class McpServer:
    """Stdio MCP server; tools reach the attached tab through the relay."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        relay: ExtensionRelay | None = None,
        start_relay: bool = True,
    ) -> None:
        self.config = config or RelayConfig.from_env()
        self.registry = create_default_registry()
        self.relay_error: str | None = None

        if relay is None:
            instance = InstanceRegistry(path=self.config.lock_path)
            instance.claim()
            relay = ExtensionRelay(self.config, instance)
        self.relay = relay

        if start_relay:
            try:
                # Do not block MCP initialize on extension connectivity; tool calls report it.
                self.relay.start(wait_timeout=2.0, require_listening=False)
            except Exception as exc:  # noqa: BLE001
                # Tools report the missing relay; the handshake still succeeds.
                self.relay_error = str(exc)
                logger.error("relay_start_failed: %s", exc)

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        """Answer initialize with the negotiated protocol version."""
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        _write_message(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": initialize_result(protocol),
            }
        )

    def handle_list_tools(self, request_id: Any) -> None:
        _write_message(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"tools": tools_list()},
            }
        )

    def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        logger.info("tool=%s", name)

        try:
            if not name:
                result = ToolResult.error("Missing tool name")
            elif not self.registry.has(name):
                result = ToolResult.error(f"Unknown tool: {name}", tool=name)
            else:
                result = self.registry.dispatch(name, self.relay, arguments)
        except RelayCallError as e:
            logger.info("tool_error tool=%s state=%s reason=%s", name, e.state, e)
            result = ToolResult.error(str(e), meta={"isError": True, **e.details()})
        except Exception as exc:
            logger.exception("tool_call_failed")
            result = ToolResult.error(str(exc) or type(exc).__name__, tool=name)

        _write_message(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": result.to_result(),
            }
        )

    def dispatch(self, message: dict[str, Any]) -> None:
        """Route one inbound JSON-RPC frame. Notifications never get a reply."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method == "notifications/initialized":
            return
        elif method in ("tools/list", "list_tools"):
            self.handle_list_tools(request_id)
        elif method in ("tools/call", "call_tool"):
            name = params.get("name")
            arguments = params.get("arguments") or {}
            self.handle_call_tool(request_id, name or "", arguments)
        elif method == "ping":
            _write_message({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif request_id is None:
            # Unknown notification: nothing to answer.
            return
        else:
            _write_message(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )

    def shutdown(self) -> None:
        logger.info("shutting down relay")
        self.relay.stop()
        self.relay.registry.close()


def main() -> None:
    """Run the stdio loop until EOF or SIGINT/SIGTERM, then stop the relay."""
    server = McpServer()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("received signal %s", signum)
        server.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.dispatch(message)
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
