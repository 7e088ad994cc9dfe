"""
Type definitions for MCP server responses and handlers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..relay import ExtensionRelay


@dataclass(slots=True)
class ToolContent:
    """Single content item in tool response."""

    type: str  # "text" only for this server
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP content format."""
        return {"type": "text", "text": self.text or ""}


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution."""

    content: list[ToolContent] = field(default_factory=list)
    is_error: bool = False
    # Raw payload kept for tests and internal callers; not part of the wire format.
    data: Any | None = None
    # Observability counts surfaced as `_meta` on the MCP result.
    meta: dict[str, Any] | None = None

    @classmethod
    def text(cls, text: str, *, data: Any | None = None, meta: dict[str, Any] | None = None) -> ToolResult:
        """Create result with single text content."""
        return cls(content=[ToolContent(type="text", text=text or "")], data=data, meta=meta)

    @classmethod
    def error(
        cls,
        message: str,
        *,
        tool: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Create error result. The first line is always the human-readable message."""
        payload: dict[str, Any] = {"ok": False, "error": message}
        if tool:
            payload["tool"] = tool
        text = message
        extra = {k: v for k, v in payload.items() if k not in {"ok", "error"}}
        if extra:
            text = f"{message}\n\n{json.dumps(extra, indent=2, ensure_ascii=False)}"
        return cls(content=[ToolContent(type="text", text=text)], is_error=True, data=payload, meta=meta)

    @classmethod
    def json(cls, data: Any, *, meta: dict[str, Any] | None = None) -> ToolResult:
        """Create result with pretty-printed JSON text content."""
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        return cls(content=[ToolContent(type="text", text=text)], data=data, meta=meta)

    def to_content_list(self) -> list[dict[str, Any]]:
        """Convert to MCP content list format."""
        return [c.to_dict() for c in self.content]

    def to_result(self) -> dict[str, Any]:
        out: dict[str, Any] = {"content": self.to_content_list(), "isError": self.is_error}
        if self.meta:
            out["_meta"] = self.meta
        return out


class ToolHandler(Protocol):
    """Protocol for tool handler functions."""

    def __call__(self, relay: ExtensionRelay, arguments: dict[str, Any]) -> ToolResult: ...

