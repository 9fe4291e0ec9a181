"""Newline-delimited JSON-RPC 2.0 framing for the app-server stdio transport."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from codex_gateway.errors import ProtocolIntegrityError

JSONRPC_VERSION = "2.0"
UNSUPPORTED_METHOD_CODE = -32000


class MessageKind(str, Enum):
    SERVER_REQUEST = "server_request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    UNKNOWN = "unknown"


def encode_frame(message: dict[str, Any]) -> bytes:
    """Serialize one message as a single UTF-8 line.

    Strings holding lone surrogates cannot be written as UTF-8; such frames are
    written with every non-ASCII character escaped instead.
    """
    payload = json.dumps(message, ensure_ascii=False, separators=(",", ":"))
    try:
        return (payload + "\n").encode("utf-8")
    except UnicodeEncodeError:
        return (json.dumps(message, separators=(",", ":")) + "\n").encode("ascii")


def decode_frame(line: bytes | str) -> Any | None:
    """Parse one inbound line.

    Returns None for blank lines. Raises ProtocolIntegrityError when the line
    is not valid JSON.
    """
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolIntegrityError(text) from exc


def classify(message: Any) -> MessageKind:
    if not isinstance(message, dict):
        return MessageKind.UNKNOWN
    has_id = "id" in message
    has_method = isinstance(message.get("method"), str)
    has_outcome = "result" in message or "error" in message

    if has_id and has_method and not has_outcome:
        return MessageKind.SERVER_REQUEST
    if has_id and has_outcome and not has_method:
        return MessageKind.RESPONSE
    if has_method:
        return MessageKind.NOTIFICATION
    return MessageKind.UNKNOWN


def build_request(request_id: int, method: str, params: Any = None) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params}


def build_notification(method: str, params: Any = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def build_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def build_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}}


def unsupported_method_error(request_id: Any, method: Any) -> dict[str, Any]:
    return build_error(request_id, UNSUPPORTED_METHOD_CODE, f"Unsupported server request method: {method}")
