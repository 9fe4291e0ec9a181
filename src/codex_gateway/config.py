"""Configuration management for the Codex gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from codex_gateway import __version__
from codex_gateway.errors import ConfigurationError

SandboxMode = Literal["read-only", "workspace-write", "danger-full-access", "seatbelt"]


class Settings(BaseSettings):
    """Settings consumed by the app-server supervisor and turn orchestrator.

    Immutable for the lifetime of a session.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODEX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # App-server process
    path: str = Field(default="codex", min_length=1, description="Codex CLI executable")
    workdir: Path = Field(default_factory=Path.cwd, description="Working directory for the app-server and its thread")
    sandbox: SandboxMode = Field(default="workspace-write", description="Sandbox mode for thread/start")
    auto_approve: bool = Field(default=True, description="Approve execution requests from the app-server")

    # Timeouts and recovery
    request_timeout_ms: int = Field(default=30_000, gt=0, description="Per JSON-RPC request timeout")
    turn_timeout_ms: int = Field(default=300_000, gt=0, description="Default per-turn deadline")
    auto_restart: bool = Field(default=True, description="Respawn the app-server after it exits")
    restart_delay_ms: int = Field(default=1_000, ge=0, description="Delay before an automatic respawn")

    # Turns
    default_model: str = Field(default="gpt-5.2", description="Model used when a caller does not pick one")

    # initialize.clientInfo
    client_name: str = Field(default="codex-gateway")
    client_version: str = Field(default=__version__)

    @field_validator("path", "default_model", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("workdir", mode="after")
    @classmethod
    def _resolve_workdir(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @property
    def approval_policy(self) -> str:
        return "never" if self.auto_approve else "on-request"


def load_settings(**overrides: Any) -> Settings:
    """Load settings from the environment, applying non-None overrides."""
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**values)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
