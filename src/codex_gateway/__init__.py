"""Codex gateway - supervise a Codex app-server and run turns against it."""

__version__ = "0.1.0"

from codex_gateway.client import CodexClient  # noqa: E402
from codex_gateway.config import Settings, load_settings  # noqa: E402
from codex_gateway.types import TurnResult, TurnUsage  # noqa: E402

__all__ = ["CodexClient", "Settings", "TurnResult", "TurnUsage", "load_settings"]
