"""Failure taxonomy for relay tool calls.

Every failure of a single tool call is one of these. The MCP layer renders
them as `isError` results; none of them is fatal to the process.
"""

from __future__ import annotations


class RelayCallError(Exception):
    """Base class: a tool call that resolved to a failure."""

    state = "error"

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id

    def details(self) -> dict[str, object]:
        out: dict[str, object] = {"connectionState": self.state}
        if self.request_id:
            out["requestId"] = self.request_id
        return out


class NotLeaderError(RelayCallError):
    state = "not_active"

    def __init__(self, instance_id: str) -> None:
        super().__init__(
            f"This server instance is not active (instanceId={instance_id}). "
            "A newer instance likely took over. Please use the latest server instance."
        )
        self.instance_id = instance_id

    def details(self) -> dict[str, object]:
        out = super().details()
        out["instanceId"] = self.instance_id
        return out


class NotConnectedError(RelayCallError):
    state = "no_socket"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Chrome extension is not connected. Please ensure the extension is installed and a tab is attached."
        )


class SendFailedError(RelayCallError):
    state = "send_failed"

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__(
            "Failed to send request to extension (inactive server or no connection).",
            request_id=request_id,
        )


class RequestTimeoutError(RelayCallError):
    state = "timeout"

    def __init__(self, what: str, timeout_s: float, *, request_id: str | None = None) -> None:
        super().__init__(
            f"Timeout waiting for {what} from extension ({int(timeout_s * 1000)}ms). "
            "The extension may be busy or disconnected.",
            request_id=request_id,
        )
        self.timeout_s = timeout_s

    def details(self) -> dict[str, object]:
        out = super().details()
        out["timeoutMs"] = int(self.timeout_s * 1000)
        return out


class ConnectionClosedError(RelayCallError):
    state = "closed"

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__("Extension connection closed while processing request.", request_id=request_id)


class ConnectionFailedError(RelayCallError):
    state = "error"

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__("Extension connection error while processing request.", request_id=request_id)


class RemoteError(RelayCallError):
    """The extraction routine reported an error; its text is surfaced verbatim."""

    state = "remote_error"


class MalformedMessage(ValueError):
    """Inbound relay frame that is not a JSON object."""
