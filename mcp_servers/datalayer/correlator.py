"""Pairs relay requests with their responses.

Each outgoing request gets a fresh id and a pending entry keyed by
`(response_type, request_id)`. The entry is settled by whichever comes first:
the matching response, the peer channel closing or failing, or the timeout.
Everything here runs on the relay's event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import (
    ConnectionClosedError,
    ConnectionFailedError,
    NotConnectedError,
    NotLeaderError,
    RemoteError,
    RequestTimeoutError,
    SendFailedError,
)
from .protocol import MessageKind, request_message

if TYPE_CHECKING:
    from .relay import ExtensionRelay, PeerChannel

_LOGGER = logging.getLogger("mcp.datalayer.correlator")

PendingKey = tuple[str, str]


@dataclass(frozen=True)
class CallResult:
    kind: MessageKind
    request_id: str
    payload: dict[str, Any]
    elapsed_ms: int
    summary: dict[str, Any] = field(default_factory=dict)

    def meta(self) -> dict[str, Any]:
        return {"requestId": self.request_id, "elapsedMs": self.elapsed_ms, **self.summary}


def _response_payload(msg: dict[str, Any]) -> dict[str, Any]:
    payload = msg.get("payload")
    if isinstance(payload, dict):
        return payload
    return {k: v for k, v in msg.items() if k not in {"type", "requestId"}}


class Correlator:
    def __init__(self, relay: ExtensionRelay) -> None:
        self._relay = relay
        self._pending: dict[PendingKey, asyncio.Future[dict[str, Any]]] = {}

    def pending_count(self) -> int:
        return len(self._pending)

    async def request(self, kind: MessageKind, *, timeout_s: float | None = None) -> CallResult:
        relay = self._relay
        registry = relay.registry
        if not registry.is_active():
            raise NotLeaderError(registry.instance_id)

        channel: PeerChannel | None = relay.current_channel()
        if channel is None or not channel.is_open():
            raise NotConnectedError()
        if not relay.state.is_healthy:
            _LOGGER.warning("requesting %s on a potentially unhealthy connection", kind.value)

        budget = float(timeout_s if timeout_s is not None else kind.timeout_s)
        request_id = uuid.uuid4().hex
        key: PendingKey = (kind.response_type, request_id)
        response: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[key] = response
        started = time.monotonic()
        _LOGGER.info("request type=%s requestId=%s timeout=%.1fs", kind.request_type, request_id, budget)

        try:
            if not await relay.send(request_message(kind, request_id), channel=channel):
                raise SendFailedError(request_id=request_id)

            done, _ = await asyncio.wait(
                {response, channel.closed, channel.failed},
                timeout=budget,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if response in done:
                payload = response.result()
            elif channel.failed in done:
                raise ConnectionFailedError(request_id=request_id)
            elif channel.closed in done:
                raise ConnectionClosedError(request_id=request_id)
            else:
                _LOGGER.warning("timeout type=%s requestId=%s after %.1fs", kind.request_type, request_id, budget)
                raise RequestTimeoutError(kind.info.label, budget, request_id=request_id)
        finally:
            self._pending.pop(key, None)
            if not response.done():
                response.cancel()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        error = payload.get("error")
        if error:
            _LOGGER.info("remote error type=%s requestId=%s: %s", kind.response_type, request_id, error)
            raise RemoteError(str(error), request_id=request_id)

        try:
            summary = dict(kind.info.summarize(payload))
        except Exception:  # noqa: BLE001
            summary = {}
        _LOGGER.info("response type=%s requestId=%s elapsedMs=%s %s", kind.response_type, request_id, elapsed_ms, summary)
        return CallResult(kind=kind, request_id=request_id, payload=payload, elapsed_ms=elapsed_ms, summary=summary)

    def dispatch(self, channel: PeerChannel, msg: dict[str, Any]) -> None:
        """Relay dispatcher: settle the pending request a response frame answers."""

        mtype = msg.get("type")
        kind = MessageKind.from_response_type(mtype)
        if kind is None:
            _LOGGER.debug("unhandled relay message type=%s channel=%s", mtype, channel.channel_id)
            return
        request_id = msg.get("requestId")
        fut = self._pending.get((kind.response_type, str(request_id)))
        if fut is None or fut.done():
            _LOGGER.debug("no pending request for type=%s requestId=%s", mtype, request_id)
            return
        fut.set_result(_response_payload(msg))


__all__ = ["CallResult", "Correlator"]
