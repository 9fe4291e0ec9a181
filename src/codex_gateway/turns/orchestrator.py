"""Serialized turn execution against the single app-server thread."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from codex_gateway.appserver.supervisor import AppServerSupervisor
from codex_gateway.errors import NoActiveThread
from codex_gateway.turns.waiter import TurnWaiter
from codex_gateway.types import TurnResult, TurnTask


class TurnOrchestrator:
    """Runs one turn at a time, in submission order.

    Each queued turn waits for the previous one to finish, whatever its
    outcome. Callers get a shielded future: abandoning it does not cancel the
    turn, which keeps the queue consistent.
    """

    def __init__(self, supervisor: AppServerSupervisor, *, default_timeout_ms: int) -> None:
        self._supervisor = supervisor
        self._default_timeout_ms = default_timeout_ms
        self._tail: asyncio.Task[TurnResult] | None = None
        self._submitted = 0

    def queue_turn(
        self,
        input_text: str,
        timeout_ms: int | None = None,
        model: str | None = None,
    ) -> asyncio.Future[TurnResult]:
        task = TurnTask(input_text=input_text, timeout_ms=timeout_ms or self._default_timeout_ms, model=model)
        self._submitted += 1
        previous = self._tail
        turn = asyncio.create_task(self._run_after(previous, task), name=f"codex-turn-{self._submitted}")
        turn.add_done_callback(_log_outcome)
        self._tail = turn
        return asyncio.shield(turn)

    async def _run_after(self, previous: asyncio.Task[TurnResult] | None, task: TurnTask) -> TurnResult:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        return await self._run_turn(task)

    async def _run_turn(self, task: TurnTask) -> TurnResult:
        await self._supervisor.ensure_ready()
        thread_id = self._supervisor.thread_id
        if not thread_id:
            raise NoActiveThread()

        waiter = TurnWaiter(thread_id, task.timeout_ms)
        waiter.attach(self._supervisor.events)
        try:
            response = await self._supervisor.send_request("turn/start", build_turn_start_params(thread_id, task))
            turn = response.get("turn") if isinstance(response, dict) else None
            turn_id = turn.get("id") if isinstance(turn, dict) else None
            if turn_id:
                waiter.bind_turn_id(turn_id)
            logger.info("turn.started thread={} turn_id={}", thread_id, waiter.turn_id)
            return await waiter.future
        finally:
            waiter.dispose()


def build_turn_start_params(thread_id: str, task: TurnTask) -> dict[str, Any]:
    params: dict[str, Any] = {
        "threadId": thread_id,
        "input": [{"type": "text", "text": task.input_text, "text_elements": []}],
    }
    if task.normalized_model:
        params["model"] = task.normalized_model
    return params


def _log_outcome(turn: asyncio.Task[TurnResult]) -> None:
    if turn.cancelled():
        logger.warning("turn.cancelled name={}", turn.get_name())
        return
    error = turn.exception()
    if error is not None:
        logger.warning("turn.failed name={} error={}", turn.get_name(), error)
