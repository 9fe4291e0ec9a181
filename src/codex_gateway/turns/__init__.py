"""Turn orchestration on top of the app-server supervisor."""

from codex_gateway.turns.orchestrator import TurnOrchestrator
from codex_gateway.turns.waiter import TurnState, TurnWaiter

__all__ = ["TurnOrchestrator", "TurnState", "TurnWaiter"]
