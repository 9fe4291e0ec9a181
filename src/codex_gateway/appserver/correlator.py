"""Correlation table matching outbound requests to inbound responses."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from loguru import logger

from codex_gateway.errors import RequestTimeout, RpcError


@dataclass
class PendingRequest:
    """One outstanding JSON-RPC call."""

    request_id: int
    method: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Allocates request ids and settles each pending request exactly once.

    An entry leaves the table through exactly one of: a matching response,
    its timer, an explicit rejection or discard, or ``fail_all``.
    """

    def __init__(self) -> None:
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def register(self, method: str, timeout_ms: int) -> PendingRequest:
        loop = asyncio.get_running_loop()
        request_id = self._next_id
        self._next_id += 1
        pending = PendingRequest(request_id=request_id, method=method, future=loop.create_future())
        pending.timer = loop.call_later(timeout_ms / 1000, self._expire, request_id, timeout_ms)
        self._pending[request_id] = pending
        return pending

    def settle_response(self, message: dict[str, Any]) -> bool:
        """Deliver a response frame; unmatched ids are dropped."""
        pending = self._take(message.get("id"))
        if pending is None:
            logger.debug("codex.response.unmatched id={}", message.get("id"))
            return False
        if pending.future.done():
            return False
        if "error" in message:
            pending.future.set_exception(RpcError(pending.method, message["error"]))
        else:
            pending.future.set_result(message.get("result"))
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        pending = self._take(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(error)
        return True

    def discard(self, request_id: int) -> None:
        """Drop an entry without settling it, e.g. when its write failed."""
        self._take(request_id)

    def fail_all(self, error: BaseException) -> int:
        failed = 0
        for request_id in list(self._pending):
            if self.reject(request_id, error):
                failed += 1
        return failed

    def _expire(self, request_id: int, timeout_ms: int) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        logger.warning("codex.request.timeout id={} method={} timeout_ms={}", request_id, pending.method, timeout_ms)
        self.reject(request_id, RequestTimeout(pending.method, request_id, timeout_ms))

    def _take(self, request_id: Any) -> PendingRequest | None:
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            return None
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending
