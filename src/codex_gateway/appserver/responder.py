"""Synthetic answers for requests initiated by the app-server."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

from codex_gateway.errors import UnsupportedServerRequest

ServerRequestHandler: TypeAlias = Callable[[Any, bool], dict[str, Any]]

DYNAMIC_TOOL_UNSUPPORTED_TEXT = "Dynamic tool calls are not supported by this gateway."


def _item_approval(_params: Any, auto_approve: bool) -> dict[str, Any]:
    return {"decision": "accept" if auto_approve else "decline"}


def _legacy_approval(_params: Any, auto_approve: bool) -> dict[str, Any]:
    return {"decision": "approved" if auto_approve else "denied"}


def _default_answer(question: dict[str, Any]) -> dict[str, list[str]]:
    options = question.get("options")
    if isinstance(options, list) and options:
        return {"answers": [options[0]["label"]]}
    return {"answers": ["other" if question.get("isOther") else "yes"]}


def _request_user_input(params: Any, _auto_approve: bool) -> dict[str, Any]:
    questions = (params or {}).get("questions") or []
    return {"answers": {question["id"]: _default_answer(question) for question in questions}}


def _dynamic_tool_call(_params: Any, _auto_approve: bool) -> dict[str, Any]:
    return {
        "success": False,
        "contentItems": [{"type": "inputText", "text": DYNAMIC_TOOL_UNSUPPORTED_TEXT}],
    }


SERVER_REQUEST_HANDLERS: dict[str, ServerRequestHandler] = {
    "item/commandExecution/requestApproval": _item_approval,
    "item/fileChange/requestApproval": _item_approval,
    "execCommandApproval": _legacy_approval,
    "applyPatchApproval": _legacy_approval,
    "item/tool/requestUserInput": _request_user_input,
    "item/tool/call": _dynamic_tool_call,
}


def build_server_request_result(method: str, params: Any, *, auto_approve: bool = True) -> dict[str, Any]:
    """Return the result payload for a server-initiated request.

    Raises UnsupportedServerRequest for methods outside the known set. Malformed
    params surface as the handler's own exception.
    """
    handler = SERVER_REQUEST_HANDLERS.get(method)
    if handler is None:
        raise UnsupportedServerRequest(method)
    return handler(params, auto_approve)
