"""Per-turn event state machine."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import Any

from loguru import logger

from codex_gateway.appserver.events import SessionEvents
from codex_gateway.errors import TurnError, TurnTimeout
from codex_gateway.types import TurnResult, TurnUsage

AGENT_MESSAGE_DELTA = "item/agentMessage/delta"
ITEM_COMPLETED = "item/completed"
TOKEN_USAGE_UPDATED = "thread/tokenUsage/updated"
ERROR = "error"
TURN_COMPLETED = "turn/completed"

TURN_METHODS = frozenset({AGENT_MESSAGE_DELTA, ITEM_COMPLETED, TOKEN_USAGE_UPDATED, ERROR, TURN_COMPLETED})


class TurnState(str, Enum):
    PENDING = "pending"
    ACCUMULATING = "accumulating"
    SUCCEEDED = "settled-success"
    FAILED = "settled-error"
    TIMED_OUT = "settled-timeout"

    @property
    def settled(self) -> bool:
        return self not in (TurnState.PENDING, TurnState.ACCUMULATING)


class TurnWaiter:
    """Collects the notifications of one turn into a single result.

    Notifications are scoped to the thread id, then to the turn id. Before the
    turn id is bound, an in-scope event is accepted and teaches the turn id.
    The first terminal transition wins; later events and the deadline timer
    are ignored, and listeners are unsubscribed exactly once.
    """

    def __init__(self, thread_id: str, timeout_ms: int) -> None:
        loop = asyncio.get_running_loop()
        self.thread_id = thread_id
        self.turn_id: str | None = None
        self.timeout_ms = timeout_ms
        self.state = TurnState.PENDING
        self.future: asyncio.Future[TurnResult] = loop.create_future()
        self._deltas: list[str] = []
        self._latest_message = ""
        self._usage = TurnUsage()
        self._unsubscribers: list[Callable[[], None]] = []
        self._timer = loop.call_later(timeout_ms / 1000, self._on_deadline)

    @property
    def settled(self) -> bool:
        return self.state.settled

    @property
    def text(self) -> str:
        return self._latest_message or "".join(self._deltas)

    @property
    def usage(self) -> TurnUsage:
        return self._usage

    def attach(self, events: SessionEvents) -> None:
        if self.settled:
            return
        self._unsubscribers.append(events.on_notification(self.handle_notification))
        self._unsubscribers.append(events.on_session_lost(self.fail))

    def bind_turn_id(self, turn_id: str) -> None:
        if self.settled:
            return
        self.turn_id = turn_id

    def handle_notification(self, message: dict[str, Any]) -> None:
        if self.settled:
            return
        method = message.get("method")
        if method not in TURN_METHODS:
            return
        params = message.get("params")
        if not isinstance(params, dict) or params.get("threadId") != self.thread_id:
            return
        if not self._accept_turn_id(_event_turn_id(method, params)):
            return

        if self.state is TurnState.PENDING:
            self.state = TurnState.ACCUMULATING

        if method == AGENT_MESSAGE_DELTA:
            delta = params.get("delta")
            if isinstance(delta, str):
                self._deltas.append(delta)
        elif method == ITEM_COMPLETED:
            item = params.get("item")
            if isinstance(item, dict) and item.get("type") == "agentMessage" and isinstance(item.get("text"), str):
                self._latest_message = item["text"]
        elif method == TOKEN_USAGE_UPDATED:
            self._usage = TurnUsage.from_token_usage(params.get("tokenUsage"))
        elif method == ERROR:
            self._on_error_event(params)
        else:
            self._on_turn_completed(params.get("turn") or {})

    def fail(self, error: BaseException) -> None:
        self._settle(TurnState.FAILED, error=error)

    def dispose(self) -> None:
        """Release the timer and listeners without settling a result."""
        if not self.settled:
            self.state = TurnState.FAILED
            self._release()
            self.future.cancel()
        elif self.future.done() and not self.future.cancelled():
            # Mark the outcome retrieved when nobody awaited it.
            self.future.exception()

    def _accept_turn_id(self, event_turn_id: Any) -> bool:
        if self.turn_id is None:
            if event_turn_id:
                self.turn_id = event_turn_id
            return True
        return event_turn_id == self.turn_id

    def _on_error_event(self, params: dict[str, Any]) -> None:
        if params.get("willRetry"):
            logger.info("turn.error.will_retry turn_id={}", self.turn_id)
            return
        error = params.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        self._settle(TurnState.FAILED, error=TurnError(message or "Turn failed.", status="failed"))

    def _on_turn_completed(self, turn: dict[str, Any]) -> None:
        status = turn.get("status")
        if status == "completed":
            self._settle(TurnState.SUCCEEDED, result=TurnResult(text=self.text, usage=self._usage))
            return
        error = turn.get("error")
        details = (error.get("message") if isinstance(error, dict) else None) or "turn did not complete"
        self._settle(TurnState.FAILED, error=TurnError(f"Turn {status or 'unknown'}: {details}", status=status))

    def _on_deadline(self) -> None:
        self._settle(TurnState.TIMED_OUT, error=TurnTimeout(self.timeout_ms))

    def _settle(
        self,
        state: TurnState,
        *,
        result: TurnResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self.settled:
            return
        self.state = state
        self._release()
        logger.info("turn.settled state={} thread={} turn_id={}", state.value, self.thread_id, self.turn_id)
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)

    def _release(self) -> None:
        self._timer.cancel()
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()


def _event_turn_id(method: str, params: dict[str, Any]) -> Any:
    if method == TURN_COMPLETED:
        turn = params.get("turn")
        return turn.get("id") if isinstance(turn, dict) else None
    return params.get("turnId")
