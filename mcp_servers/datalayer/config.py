from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

DEFAULT_RELAY_PORT = 57321
LOCK_BASENAME = "dataLayerMCP_active_instance.json"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def default_lock_path() -> str:
    return str(Path(tempfile.gettempdir()) / LOCK_BASENAME)


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


@dataclass
class RelayConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_RELAY_PORT
    lock_path: str = ""
    server_version: str = "0.1.0"
    health_check_interval_s: float = 30.0
    # Ping period used by the extension; the relay considers a peer stale after 2x.
    keepalive_period_s: float = 20.0
    port_reclaim: bool = True
    port_reclaim_wait_s: float = 5.0
    extension_origin: str | None = None

    def __post_init__(self) -> None:
        if not self.lock_path:
            self.lock_path = default_lock_path()

    @property
    def stale_after_s(self) -> float:
        return self.keepalive_period_s * 2

    @classmethod
    def from_env(cls) -> RelayConfig:
        host = (os.environ.get("MCP_RELAY_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        lock_raw = (os.environ.get("MCP_INSTANCE_LOCK") or "").strip()
        origin = (os.environ.get("EXTENSION_ORIGIN") or "").strip() or None
        return cls(
            host=host,
            port=_int_env("MCP_RELAY_PORT", default=DEFAULT_RELAY_PORT, lo=1, hi=65535),
            lock_path=expand_path(lock_raw) if lock_raw else default_lock_path(),
            server_version=(os.environ.get("MCP_SERVER_VERSION") or "0.1.0").strip() or "0.1.0",
            health_check_interval_s=_float_env("MCP_RELAY_HEALTH_INTERVAL", default=30.0, lo=0.05, hi=600.0),
            keepalive_period_s=_float_env("MCP_RELAY_KEEPALIVE", default=20.0, lo=0.05, hi=300.0),
            port_reclaim=_bool_env("MCP_RELAY_RECLAIM_PORT", default=True),
            port_reclaim_wait_s=_float_env("MCP_RELAY_RECLAIM_WAIT", default=5.0, lo=0.0, hi=60.0),
            extension_origin=origin,
        )
