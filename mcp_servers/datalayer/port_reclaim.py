"""Free the relay port from stale server processes before binding.

A previous tool server that was not shut down cleanly keeps listening on the
relay port. Newer instances are authoritative, so they terminate whatever owns
the port and then wait a bounded time for the OS to release it.
"""

from __future__ import annotations

import errno
import logging
import os
import socket
import time

import psutil

_LOGGER = logging.getLogger("mcp.datalayer.port")


def _is_listener(conn, port: int) -> bool:
    laddr = conn.laddr
    if not laddr or getattr(laddr, "port", None) != port:
        return False
    return conn.status == psutil.CONN_LISTEN


def _listening_pids_by_process(port: int) -> set[int]:
    # Only processes this user may inspect are visible.
    pids: set[int] = set()
    for proc in psutil.process_iter(["pid"]):
        try:
            conns = proc.net_connections(kind="inet")
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if any(_is_listener(conn, port) for conn in conns):
            pids.add(int(proc.pid))
    return pids


def _listening_pids(port: int) -> set[int]:
    try:
        conns = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        # macOS refuses the system-wide table to non-root callers.
        _LOGGER.debug("system socket table denied (port=%s); scanning processes", port)
        return _listening_pids_by_process(port)
    except OSError as exc:
        _LOGGER.info("cannot enumerate sockets (port=%s): %s", port, exc)
        return set()
    return {int(conn.pid) for conn in conns if conn.pid and _is_listener(conn, port)}


def kill_processes_on_port(port: int) -> list[int]:
    """Kill every process (other than this one) listening on `port`.

    Returns the pids that were signalled. Errors are logged and skipped.
    """

    killed: list[int] = []
    own_pid = os.getpid()
    for pid in sorted(_listening_pids(port)):
        if pid == own_pid:
            continue
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as exc:
            _LOGGER.warning("cannot kill process on port=%s pid=%s: %s", port, pid, exc)
            continue
        _LOGGER.info("killed process on port=%s pid=%s name=%s", port, pid, name)
        killed.append(pid)
    return killed


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError as exc:
        if exc.errno != errno.EADDRINUSE:
            _LOGGER.debug("bind probe failed (port=%s): %s", port, exc)
        return True
    finally:
        sock.close()
    return False


def ensure_port_available(
    port: int,
    *,
    host: str = "127.0.0.1",
    max_wait_s: float = 5.0,
    poll_s: float = 0.1,
) -> bool:
    """Reclaim `port` and wait for it to become bindable.

    Returns True when the port is free. After `max_wait_s` a warning is logged and
    False is returned; the caller binds anyway and surfaces the bind error.
    """

    kill_processes_on_port(port)
    deadline = time.monotonic() + max(0.0, max_wait_s)
    while True:
        if not is_port_in_use(port, host):
            return True
        if time.monotonic() >= deadline:
            _LOGGER.warning("port still in use after %.1fs (port=%s); binding anyway", max_wait_s, port)
            return False
        time.sleep(max(0.01, poll_s))


__all__ = ["ensure_port_available", "is_port_in_use", "kill_processes_on_port"]
