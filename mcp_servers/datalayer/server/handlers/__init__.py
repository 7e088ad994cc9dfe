"""
Tool handlers organized by domain.

All handlers follow the signature: (relay, arguments) -> ToolResult
"""

from .extraction import EXTRACTION_HANDLERS
from .status import STATUS_HANDLERS

# Aggregate all handlers
ALL_HANDLERS: dict[str, tuple] = {
    **EXTRACTION_HANDLERS,
    **STATUS_HANDLERS,
}

__all__ = [
    "ALL_HANDLERS",
    "EXTRACTION_HANDLERS",
    "STATUS_HANDLERS",
]
