"""Application-level exception types for the Codex gateway."""

from __future__ import annotations

import json
from typing import Any


class GatewayError(Exception):
    """Base exception for the Codex gateway."""


class ConfigurationError(GatewayError):
    """Raised when configuration values are invalid."""


class StartupError(GatewayError):
    """Raised when the app-server cannot be spawned or fails its handshake."""


class TransportError(GatewayError):
    """Raised when a frame is written while the app-server is not writable."""


class RequestTimeout(GatewayError):
    """Raised when a correlated request receives no response in time."""

    def __init__(self, method: str, request_id: int, timeout_ms: int) -> None:
        super().__init__(f"Codex request timed out for method {method}.")
        self.method = method
        self.request_id = request_id
        self.timeout_ms = timeout_ms


class RpcError(GatewayError):
    """Raised when the app-server answers a request with a JSON-RPC error."""

    def __init__(self, method: str | None, error: Any) -> None:
        super().__init__(message_from_rpc_error(error))
        self.method = method
        self.code = error.get("code") if isinstance(error, dict) else None
        self.data = error.get("data") if isinstance(error, dict) else None


class SessionLostError(GatewayError):
    """Base exception for failures that end the current app-server session."""


class ProcessExitError(SessionLostError):
    """Raised for work in flight when the app-server process exits."""

    def __init__(self, returncode: int | None = None) -> None:
        super().__init__("Codex app-server exited.")
        self.returncode = returncode


class ProtocolIntegrityError(SessionLostError):
    """Raised when the app-server writes a line that is not valid JSON."""

    def __init__(self, line: str) -> None:
        super().__init__("Codex app-server sent a malformed frame; session was reset.")
        self.line = line


class ShutdownError(SessionLostError):
    """Raised for work in flight when the client is stopped."""

    def __init__(self) -> None:
        super().__init__("Codex client is shutting down.")


class NoActiveThread(GatewayError):
    """Raised when no thread id is available after becoming ready."""

    def __init__(self) -> None:
        super().__init__("No active thread id.")


class TurnError(GatewayError):
    """Raised when the app-server reports a turn as failed or not completed."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class TurnTimeout(TurnError):
    """Raised when a turn reaches its deadline without a terminal event."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Turn timed out after {timeout_ms}ms.", status="timeout")
        self.timeout_ms = timeout_ms


class UnsupportedServerRequest(GatewayError):
    """Raised when the app-server sends a request method we cannot answer."""

    def __init__(self, method: str) -> None:
        super().__init__(f"Unsupported server request: {method}")
        self.method = method


def message_from_rpc_error(error: Any) -> str:
    if not error:
        return "Unknown JSON-RPC error"
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return json.dumps(error, ensure_ascii=False)
