#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[mcp] relay={os.environ.get('MCP_RELAY_HOST', '127.0.0.1')}:{os.environ.get('MCP_RELAY_PORT', '57321')} | "
    f"lock={os.environ.get('MCP_INSTANCE_LOCK', 'tmp')} | "
    f"reclaim_port={os.environ.get('MCP_RELAY_RECLAIM_PORT', '1')} | "
    f"extension_origin={os.environ.get('EXTENSION_ORIGIN', '-')}",
    file=sys.stderr,
)

from mcp_servers.datalayer.main import main  # noqa: E402

if __name__ == "__main__":
    main()
