"""
Extraction tool handlers - one per relay message kind.

Each handler performs a single request/response round-trip over the relay and
renders the payload. Relay failures propagate as `RelayCallError` and are
turned into error results by the server loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import yaml

from ...protocol import MessageKind
from ..types import ToolHandler, ToolResult

if TYPE_CHECKING:
    from ...correlator import CallResult
    from ...relay import ExtensionRelay


def _normalize_microdata_item(item: Any) -> Any:
    # Extractor bookkeeping lives under `_meta`; only `itemid` is worth keeping, as `@id`.
    if not isinstance(item, dict):
        return item
    out = {k: v for k, v in item.items() if k != "_meta"}
    meta = item.get("_meta")
    item_id = meta.get("itemid") if isinstance(meta, dict) else None
    if item_id and not out.get("@id"):
        out["@id"] = item_id
    return out


def build_schema_document(payload: dict[str, Any]) -> dict[str, Any]:
    json_ld: list[Any] = []
    entries = payload.get("jsonLd")
    for entry in entries if isinstance(entries, list) else []:
        parsed = entry.get("parsed") if isinstance(entry, dict) else None
        if parsed is None:
            continue  # script block that failed to parse
        if isinstance(parsed, list):
            json_ld.extend(parsed)
        else:
            json_ld.append(parsed)

    raw_micro = payload.get("microdataStructured")
    microdata = [_normalize_microdata_item(it) for it in raw_micro] if isinstance(raw_micro, list) else []

    doc: dict[str, Any] = {}
    if json_ld:
        doc["jsonLd"] = json_ld
    if microdata:
        doc["microdata"] = microdata
    return doc


def build_schema_yaml(payload: dict[str, Any]) -> str:
    """Render JSON-LD and microdata as one compact YAML document ("{}" when empty)."""
    doc = build_schema_document(payload)
    if not doc:
        return "{}"
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True, default_flow_style=False, width=120)


def _render(result: CallResult) -> ToolResult:
    meta = result.meta()
    if result.kind is MessageKind.SCHEMA_MARKUP:
        try:
            return ToolResult.text(build_schema_yaml(result.payload), data=result.payload, meta=meta)
        except yaml.YAMLError:
            return ToolResult.json(result.payload, meta=meta)
    return ToolResult.json(result.payload, meta=meta)


def _make_handler(kind: MessageKind) -> ToolHandler:
    def handler(relay: ExtensionRelay, args: dict[str, Any]) -> ToolResult:
        return _render(relay.call(kind))

    handler.__name__ = f"handle_{kind.info.tool_name}"
    handler.__qualname__ = handler.__name__
    return handler


EXTRACTION_HANDLERS: dict[str, tuple] = {kind.info.tool_name: (_make_handler(kind), True) for kind in MessageKind}

__all__ = ["EXTRACTION_HANDLERS", "build_schema_document", "build_schema_yaml"]
