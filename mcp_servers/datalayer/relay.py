from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import re
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

import websockets
from websockets.protocol import State

from .config import RelayConfig
from .correlator import CallResult, Correlator
from .errors import MalformedMessage, NotConnectedError
from .instance_lock import InstanceRegistry
from .port_reclaim import ensure_port_available
from .protocol import (
    KEEPALIVE_PING,
    MessageKind,
    connection_ack,
    encode,
    error_message,
    keepalive_pong,
    parse_message,
)

_LOGGER = logging.getLogger("mcp.datalayer.relay")

SHUTDOWN_CLOSE_CODE = 1001
SHUTDOWN_CLOSE_REASON = "Server shutdown"
REPLACED_CLOSE_CODE = 1000
REPLACED_CLOSE_REASON = "Replaced by newer connection"

_LOCALHOST_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d{1,5})?/?$")

Dispatcher = Callable[["PeerChannel", dict[str, Any]], None]


def origin_allowed(origin: str | None, *, extension_origin: str | None = None) -> bool:
    """Return True when a handshake Origin may open the relay.

    Browser extension pages and local tooling are accepted. Some Chrome contexts
    omit Origin on localhost WebSocket connects, so a missing header is accepted too.
    """

    value = (origin or "").strip()
    if not value:
        return True
    if value.startswith(("chrome-extension://", "moz-extension://")):
        return True
    if extension_origin and value == extension_origin:
        return True
    return bool(_LOCALHOST_ORIGIN.match(value))


class PeerChannel:
    """One accepted extension connection.

    `closed` resolves when the receive loop ends on a clean close, `failed` when it
    ends on a transport error. Exactly one of them resolves, once.
    """

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self.channel_id = uuid.uuid4().hex[:12]
        loop = asyncio.get_running_loop()
        self.closed: asyncio.Future[None] = loop.create_future()
        self.failed: asyncio.Future[None] = loop.create_future()

    @property
    def remote_address(self) -> Any:
        return getattr(self._ws, "remote_address", None)

    def is_open(self) -> bool:
        if self.closed.done() or self.failed.done():
            return False
        return getattr(self._ws, "state", None) is State.OPEN

    async def send_text(self, text: str) -> None:
        await self._ws.send(text)

    async def close(self, code: int, reason: str) -> None:
        with contextlib.suppress(Exception):
            await self._ws.close(code=code, reason=reason)

    def mark_closed(self) -> None:
        if not self.failed.done() and not self.closed.done():
            self.closed.set_result(None)

    def mark_failed(self) -> None:
        if not self.failed.done() and not self.closed.done():
            self.failed.set_result(None)


@dataclass
class ConnectionState:
    channel: PeerChannel | None = None
    is_healthy: bool = False
    last_activity_at: float = 0.0  # time.monotonic()
    reconnect_attempts: int = 0

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()


class ExtensionRelay:
    """Local WebSocket relay between the tool server and the browser extension.

    Design goals:
    - Sync API for tool handlers (blocking `call`), async server internally
      (runs in a dedicated daemon thread).
    - Single peer: the most recent connection replaces any previous one.
    - Only the instance named by the lock file transmits anything.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: InstanceRegistry,
        *,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.correlator = Correlator(self)
        self._dispatcher: Dispatcher = dispatcher or self.correlator.dispatch

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._server: Any | None = None
        self._bind_error: str | None = None
        self._bound_port: int | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._state = ConnectionState()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0, require_listening: bool = False) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        if self.config.port_reclaim:
            try:
                ensure_port_available(
                    self.config.port,
                    host=self.config.host,
                    max_wait_s=self.config.port_reclaim_wait_s,
                )
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("port reclamation failed (port=%s): %s", self.config.port, exc)

        self._stop.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="mcp-datalayer-relay", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                server = self._server
            if server is not None:
                return
            if not t.is_alive():
                break
            time.sleep(0.05)

        with self._lock:
            bind_error = self._bind_error
            server = self._server
        if server is not None:
            return
        if not t.is_alive():
            raise RuntimeError(f"Relay thread died during startup on {self.config.host}:{self.config.port}")
        if require_listening:
            raise RuntimeError(
                f"Relay failed to listen on {self.config.host}:{self.config.port}: {bind_error or 'timeout'}"
            )
        # Fail-soft: the relay thread keeps retrying to bind.
        _LOGGER.warning("relay not listening yet on %s:%s: %s", self.config.host, self.config.port, bind_error)

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        loop = self._loop
        if loop is not None and loop.is_running():
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._shutdown_async(), loop).result(timeout=timeout)

        t = self._thread
        if t is not None:
            t.join(timeout=timeout)

    def status(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            channel = state.channel
            bind_error = self._bind_error
            listening = self._server is not None
            bound_port = self._bound_port
        idle_ms = int((time.monotonic() - state.last_activity_at) * 1000) if channel is not None else None
        return {
            "listening": listening,
            "host": self.config.host,
            "port": bound_port or self.config.port,
            **({"bindError": bind_error} if bind_error else {}),
            "connected": channel is not None and channel.is_open(),
            "healthy": bool(state.is_healthy),
            **({"lastActivityAgoMs": idle_ms} if idle_ms is not None else {}),
            "instance": self.registry.info(),
            "activeInstance": self.registry.is_active(),
            "pendingRequests": self.correlator.pending_count(),
        }

    @property
    def bound_port(self) -> int | None:
        with self._lock:
            return self._bound_port

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def current_channel(self) -> PeerChannel | None:
        with self._lock:
            return self._state.channel

    def is_connected(self) -> bool:
        channel = self.current_channel()
        return channel is not None and channel.is_open()

    def wait_for_connection(self, *, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + max(0.0, float(timeout))
        while time.monotonic() < deadline:
            if self.is_connected():
                return True
            time.sleep(0.02)
        return self.is_connected()

    # ─────────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────────

    def call(self, kind: MessageKind, *, timeout_s: float | None = None) -> CallResult:
        """Blocking request/response round-trip for tool handlers (any thread)."""

        loop = self._loop
        if loop is None or not loop.is_running():
            raise NotConnectedError()
        budget = float(timeout_s if timeout_s is not None else kind.timeout_s)
        fut = asyncio.run_coroutine_threadsafe(self.correlator.request(kind, timeout_s=budget), loop)
        # The correlator enforces the budget; the margin only guards a wedged loop.
        return fut.result(timeout=budget + 2.0)

    async def send(self, payload: dict[str, Any], *, channel: PeerChannel | None = None) -> bool:
        """Transmit one frame to the peer. Runs on the relay loop.

        Returns False (never raises) when this instance is not active, there is
        no peer, the peer is not open, or the transmit fails.
        """

        if not self.registry.is_active():
            _LOGGER.info("send skipped: instance %s is not active", self.registry.instance_id)
            return False
        target = channel or self.current_channel()
        if target is None or not target.is_open():
            return False
        try:
            await target.send_text(encode(payload))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("send failed type=%s: %s", payload.get("type"), exc)
            return False
        with self._lock:
            if self._state.channel is target:
                self._state.touch()
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Event loop
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        self._loop = asyncio.get_running_loop()

        # Keep retrying bind with backoff until stop.
        backoff_s = 0.25
        max_backoff_s = 5.0
        try:
            while not self._stop.is_set():
                with self._lock:
                    has_server = self._server is not None
                if has_server:
                    await asyncio.sleep(0.1)
                    continue

                try:
                    server = await websockets.serve(
                        self._handler,
                        self.config.host,
                        int(self.config.port),
                        process_request=self._process_request,
                        ping_interval=None,
                        max_size=16_000_000,
                    )
                except OSError as exc:
                    level = logging.WARNING if exc.errno == errno.EADDRINUSE else logging.ERROR
                    _LOGGER.log(level, "relay bind failed on %s:%s: %s", self.config.host, self.config.port, exc)
                    with self._lock:
                        self._bind_error = str(exc)
                    await asyncio.sleep(backoff_s)
                    backoff_s = min(backoff_s * 1.6, max_backoff_s)
                    continue

                port = self.config.port
                with contextlib.suppress(Exception):
                    port = int(next(iter(server.sockets)).getsockname()[1])
                with self._lock:
                    self._server = server
                    self._bound_port = port
                    self._bind_error = None
                backoff_s = 0.25
                self._health_task = asyncio.create_task(self._health_loop())
                _LOGGER.info("relay listening on %s:%s", self.config.host, port)
        finally:
            await self._shutdown_async()

    async def _process_request(self, connection: Any, request: Any) -> Any:
        origin = request.headers.get("Origin")
        if origin_allowed(origin, extension_origin=self.config.extension_origin):
            return None
        _LOGGER.warning("rejected relay handshake from origin=%s", origin)
        return connection.respond(HTTPStatus.FORBIDDEN, "Forbidden origin\n")

    async def _handler(self, ws: Any) -> None:
        channel = PeerChannel(ws)
        with self._lock:
            previous = self._state.channel
            self._state = ConnectionState(channel=channel, is_healthy=True, reconnect_attempts=0)
            self._state.touch()
        _LOGGER.info("extension connected channel=%s remote=%s", channel.channel_id, channel.remote_address)
        if previous is not None and previous.is_open():
            task = asyncio.create_task(previous.close(REPLACED_CLOSE_CODE, REPLACED_CLOSE_REASON))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        identity = self.registry.identity
        await self.send(
            connection_ack(
                server_version=self.config.server_version,
                instance_id=identity.instance_id,
                started_at=identity.started_at,
            ),
            channel=channel,
        )

        try:
            async for raw in ws:
                await self._on_frame(channel, raw)
        except websockets.exceptions.ConnectionClosedError as exc:
            _LOGGER.info("extension connection dropped channel=%s: %s", channel.channel_id, exc)
            channel.mark_failed()
        except Exception:  # noqa: BLE001
            _LOGGER.exception("extension connection error channel=%s", channel.channel_id)
            channel.mark_failed()
        finally:
            channel.mark_closed()
            self._disconnect(channel)

    async def _on_frame(self, channel: PeerChannel, raw: str | bytes) -> None:
        with self._lock:
            if self._state.channel is channel:
                self._state.touch()
        try:
            msg = parse_message(raw)
        except MalformedMessage as exc:
            _LOGGER.warning("malformed relay frame channel=%s: %s", channel.channel_id, exc)
            await self.send(error_message("Invalid JSON message format"), channel=channel)
            return

        if msg.get("type") == KEEPALIVE_PING:
            _LOGGER.debug("keepalive ping channel=%s", channel.channel_id)
            await self.send(keepalive_pong(), channel=channel)
            return

        try:
            self._dispatcher(channel, msg)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("relay dispatcher failed type=%s", msg.get("type"))

    async def _health_loop(self) -> None:
        interval = max(0.05, float(self.config.health_check_interval_s))
        stale_after = float(self.config.stale_after_s)
        while not self._stop.is_set():
            await asyncio.sleep(interval)
            with self._lock:
                state = self._state
                channel = state.channel
                if channel is None or not channel.is_open():
                    state.is_healthy = False
                    continue
                idle = time.monotonic() - state.last_activity_at
                healthy = idle <= stale_after
                was_healthy = state.is_healthy
                state.is_healthy = healthy
            if was_healthy and not healthy:
                _LOGGER.warning("relay connection appears stale (idle %.1fs), marking unhealthy", idle)

    async def _shutdown_async(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        channel = self.current_channel()
        if channel is not None:
            await channel.close(SHUTDOWN_CLOSE_CODE, SHUTDOWN_CLOSE_REASON)

        with self._lock:
            srv = self._server
            self._server = None
        if srv is not None:
            with contextlib.suppress(Exception):
                srv.close()
                await srv.wait_closed()

    def _disconnect(self, channel: PeerChannel) -> None:
        with self._lock:
            if self._state.channel is not channel:
                return
            self._state.channel = None
            self._state.is_healthy = False
        _LOGGER.info("extension disconnected channel=%s", channel.channel_id)


__all__ = [
    "ConnectionState",
    "ExtensionRelay",
    "PeerChannel",
    "origin_allowed",
]
