"""Turn data types shared by the orchestrator and its callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypeAlias

JsonObject: TypeAlias = dict[str, Any]


@dataclass(frozen=True)
class TurnUsage:
    """Token counters from the latest usage snapshot of a turn."""

    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_token_usage(cls, token_usage: Any) -> TurnUsage:
        last = token_usage.get("last") if isinstance(token_usage, dict) else None
        if not isinstance(last, dict):
            return cls()
        return cls(
            input_tokens=_as_int(last.get("inputTokens")),
            output_tokens=_as_int(last.get("outputTokens")),
        )

    def to_dict(self) -> dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass(frozen=True)
class TurnResult:
    """Aggregate result of one completed turn."""

    text: str
    usage: TurnUsage = field(default_factory=TurnUsage)

    def to_dict(self) -> JsonObject:
        return {"text": self.text, "usage": self.usage.to_dict()}


@dataclass(frozen=True)
class TurnTask:
    """One unit of conversational work submitted to the turn queue."""

    input_text: str
    timeout_ms: int
    model: str | None = None

    @property
    def normalized_model(self) -> str | None:
        if not isinstance(self.model, str):
            return None
        return self.model.strip() or None


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    return int(value)
