"""Extension-side WebSocket connection to the relay.

State machine: DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED, then
CONNECTING again after a backoff delay unless the attempt budget is spent or
the peer closed normally (1000/1001). A heartbeat ping doubles as a liveness
probe: a tick that finds the socket gone counts as a connection failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.protocol import State

from ..config import _float_env, _int_env
from ..errors import MalformedMessage
from ..protocol import CONNECTION_ACK, ERROR, KEEPALIVE_PONG, encode, keepalive_ping, parse_message

_LOGGER = logging.getLogger("mcp.datalayer.extension.connection")

DEFAULT_WS_URL = "ws://localhost:57321"
NORMAL_CLOSE_CODES = frozenset({1000, 1001})
MAX_ATTEMPTS_MESSAGE = "Max reconnection attempts reached"
FORCE_RECONNECT_DELAY_S = 0.1

MessageHandler = Callable[[dict[str, Any]], "Awaitable[None] | None"]
Observer = Callable[["ConnectionSnapshot"], None]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_s: float = 1.0
    max_attempts: int = 20
    open_timeout_s: float = 10.0
    keepalive_s: float = 20.0

    def delay(self, attempts: int, rng: Callable[[], float] = random.random) -> float:
        """min(base * 2^attempts, cap) plus uniform jitter in [0, jitter_s)."""
        exp = min(self.base_delay_s * (2 ** max(0, int(attempts))), self.max_delay_s)
        return exp + rng() * self.jitter_s

    @classmethod
    def from_env(cls) -> ReconnectPolicy:
        return cls(
            max_attempts=_int_env("MCP_EXTENSION_MAX_RECONNECTS", default=20, lo=1, hi=1000),
            open_timeout_s=_float_env("MCP_EXTENSION_OPEN_TIMEOUT", default=10.0, lo=0.1, hi=120.0),
            keepalive_s=_float_env("MCP_RELAY_KEEPALIVE", default=20.0, lo=0.05, hi=300.0),
        )


DEFAULT_POLICY = ReconnectPolicy()


def reconnect_delay(attempts: int, policy: ReconnectPolicy = DEFAULT_POLICY, rng: Callable[[], float] = random.random) -> float:
    return policy.delay(attempts, rng)


@dataclass(frozen=True)
class ConnectionSnapshot:
    status: ConnectionStatus
    reconnect_attempts: int
    last_connection_time: int | None
    last_error: str | None

    def to_json(self) -> dict[str, Any]:
        return {
            "isConnected": self.status is ConnectionStatus.CONNECTED,
            "isConnecting": self.status is ConnectionStatus.CONNECTING,
            "reconnectAttempts": self.reconnect_attempts,
            "lastConnectionTime": self.last_connection_time,
            "lastError": self.last_error,
        }


class ConnectionManager:
    """Owns the extension's single relay socket. All methods run on one event loop."""

    def __init__(
        self,
        url: str = DEFAULT_WS_URL,
        *,
        on_message: MessageHandler,
        policy: ReconnectPolicy | None = None,
        origin: str | None = None,
        on_ack: Callable[[dict[str, Any]], None] | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.url = url
        self.policy = policy or DEFAULT_POLICY
        self.origin = origin
        self._on_message = on_message
        self._on_ack = on_ack
        self._rng = rng

        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_connection_time: int | None = None
        self.last_error: str | None = None

        self._ws: Any | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self._observers: list[Observer] = []

    # ─────────────────────────────────────────────────────────────────────────
    # Observers
    # ─────────────────────────────────────────────────────────────────────────

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        with contextlib.suppress(ValueError):
            self._observers.remove(observer)

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            status=self.status,
            reconnect_attempts=self.reconnect_attempts,
            last_connection_time=self.last_connection_time,
            last_error=self.last_error,
        )

    def _broadcast(self) -> None:
        snap = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(snap)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("connection observer failed")

    def _set_status(self, status: ConnectionStatus) -> None:
        self.status = status
        self._broadcast()

    def is_connected(self) -> bool:
        ws = self._ws
        return self.status is ConnectionStatus.CONNECTED and ws is not None and ws.state is State.OPEN

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        if self.status is not ConnectionStatus.DISCONNECTED:
            _LOGGER.info("connect skipped: already %s", self.status.value)
            return

        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTING)
        _LOGGER.info(
            "connecting to %s (attempt %s/%s)", self.url, self.reconnect_attempts + 1, self.policy.max_attempts
        )
        try:
            ws = await websockets.connect(
                self.url,
                origin=self.origin,
                ping_interval=None,
                open_timeout=self.policy.open_timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
                self.last_error = "Connection timeout"
                _LOGGER.warning("connection timeout after %.1fs", self.policy.open_timeout_s)
            else:
                self.last_error = f"Connection failed: {exc}"
                _LOGGER.warning("connection failed: %s", exc)
            if self.status is not ConnectionStatus.CONNECTING:
                return
            self._set_status(ConnectionStatus.DISCONNECTED)
            self._handle_failure()
            return

        if self.status is not ConnectionStatus.CONNECTING:
            # cleanup() or force_reconnect() ran while the handshake was in flight.
            await ws.close(code=1000)
            return

        self._ws = ws
        self.reconnect_attempts = 0
        self.last_connection_time = int(time.time() * 1000)
        self.last_error = None
        self._recv_task = asyncio.create_task(self._receive_loop(ws))
        self._start_keepalive()
        _LOGGER.info("connected to relay %s", self.url)
        self._set_status(ConnectionStatus.CONNECTED)

    def force_reconnect(self) -> None:
        """Reset the attempt budget and reconnect shortly (user-initiated)."""
        _LOGGER.info("force reconnect requested")
        self.reconnect_attempts = 0
        self.last_error = None
        self._cancel_reconnect()
        self._drop_socket(code=1000, reason="Reconnecting")
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._schedule_connect(FORCE_RECONNECT_DELAY_S)

    async def cleanup(self) -> None:
        _LOGGER.info("cleaning up relay connection")
        self._stop_keepalive()
        self._cancel_reconnect()
        ws = self._ws
        self._ws = None
        recv = self._recv_task
        self._recv_task = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close(code=1001, reason="Service worker shutdown")
        if recv is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await recv
        for task in list(self._inflight):
            task.cancel()
        if self.status is not ConnectionStatus.DISCONNECTED:
            self._set_status(ConnectionStatus.DISCONNECTED)

    # ─────────────────────────────────────────────────────────────────────────
    # I/O
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, payload: dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.state is not State.OPEN:
            _LOGGER.warning("cannot send type=%s: socket not open", payload.get("type"))
            return False
        try:
            await ws.send(encode(payload))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("send failed type=%s: %s", payload.get("type"), exc)
            return False
        return True

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._on_frame(raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        except Exception:  # noqa: BLE001
            _LOGGER.exception("relay receive loop failed")
        self._on_closed(ws, ws.close_code, ws.close_reason or "")

    def _on_frame(self, raw: str | bytes) -> None:
        try:
            msg = parse_message(raw)
        except MalformedMessage as exc:
            _LOGGER.warning("dropping malformed relay frame: %s", exc)
            return

        mtype = msg.get("type")
        if mtype == KEEPALIVE_PONG:
            _LOGGER.debug("keepalive pong")
            return
        if mtype == CONNECTION_ACK:
            _LOGGER.info(
                "relay ack serverVersion=%s instanceId=%s", msg.get("serverVersion"), msg.get("serverInstanceId")
            )
            if self._on_ack is not None:
                try:
                    self._on_ack(msg)
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("ack hook failed")
            return
        if mtype == ERROR:
            _LOGGER.warning("relay reported error: %s", msg.get("error"))
            return

        # Requests are served concurrently; responses carry their own requestId.
        task = asyncio.create_task(self._dispatch(msg))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _dispatch(self, msg: dict[str, Any]) -> None:
        try:
            result = self._on_message(msg)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            _LOGGER.exception("message handler failed type=%s", msg.get("type"))

    def _on_closed(self, ws: Any, code: int | None, reason: str) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._recv_task = None
        self._stop_keepalive()
        self.last_error = f"Connection closed: {code} {reason}".rstrip()
        _LOGGER.warning("relay connection closed code=%s reason=%s", code, reason or "no reason")
        self._set_status(ConnectionStatus.DISCONNECTED)
        if code in NORMAL_CLOSE_CODES:
            return
        self._handle_failure()

    # ─────────────────────────────────────────────────────────────────────────
    # Heartbeat + reconnect
    # ─────────────────────────────────────────────────────────────────────────

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.policy.keepalive_s)
            ws = self._ws
            if ws is not None and ws.state is State.OPEN:
                try:
                    await ws.send(encode(keepalive_ping()))
                    _LOGGER.debug("sent keepalive ping")
                    continue
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.warning("keepalive ping failed: %s", exc)
                    self.last_error = f"Keepalive failed: {exc}"
            else:
                _LOGGER.warning("keepalive: socket not open, reconnecting")
                self.last_error = "Keepalive: socket not open"
            self._keepalive_task = None
            self._drop_socket(code=1000, reason="Keepalive failure")
            self._set_status(ConnectionStatus.DISCONNECTED)
            self._handle_failure()
            return

    def _handle_failure(self) -> None:
        self.reconnect_attempts += 1
        if self.reconnect_attempts >= self.policy.max_attempts:
            _LOGGER.error("max reconnection attempts (%s) reached, giving up", self.policy.max_attempts)
            self.last_error = MAX_ATTEMPTS_MESSAGE
            self._broadcast()
            return
        delay = self.policy.delay(self.reconnect_attempts, self._rng)
        _LOGGER.info(
            "scheduling reconnection in %.0fms (attempt %s/%s)",
            delay * 1000,
            self.reconnect_attempts + 1,
            self.policy.max_attempts,
        )
        self._schedule_connect(delay)

    def _schedule_connect(self, delay_s: float) -> None:
        self._cancel_reconnect()

        async def _later() -> None:
            await asyncio.sleep(delay_s)
            self._reconnect_task = None
            await self.connect()

        self._reconnect_task = asyncio.create_task(_later())

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _drop_socket(self, *, code: int, reason: str) -> None:
        # Detach first so the receive loop's close callback sees a stale socket.
        ws = self._ws
        self._ws = None
        self._recv_task = None
        self._stop_keepalive()
        if ws is None:
            return
        task = asyncio.create_task(ws.close(code=code, reason=reason))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)


__all__ = [
    "DEFAULT_WS_URL",
    "MAX_ATTEMPTS_MESSAGE",
    "ConnectionManager",
    "ConnectionSnapshot",
    "ConnectionStatus",
    "ReconnectPolicy",
    "reconnect_delay",
]
