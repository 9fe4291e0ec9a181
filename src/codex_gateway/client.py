"""Facade exposed to request-handling surfaces."""

from __future__ import annotations

import asyncio
from types import TracebackType

from codex_gateway.appserver.supervisor import AppServerSupervisor
from codex_gateway.config import Settings
from codex_gateway.turns.orchestrator import TurnOrchestrator
from codex_gateway.types import TurnResult


class CodexClient:
    """Become ready, queue turns, stop."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.supervisor = AppServerSupervisor(settings)
        self.orchestrator = TurnOrchestrator(self.supervisor, default_timeout_ms=settings.turn_timeout_ms)

    @property
    def thread_id(self) -> str | None:
        return self.supervisor.thread_id

    async def ensure_ready(self) -> None:
        await self.supervisor.ensure_ready()

    def queue_turn(
        self,
        input_text: str,
        timeout_ms: int | None = None,
        model: str | None = None,
    ) -> asyncio.Future[TurnResult]:
        return self.orchestrator.queue_turn(input_text, timeout_ms, model)

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def __aenter__(self) -> CodexClient:
        await self.ensure_ready()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
