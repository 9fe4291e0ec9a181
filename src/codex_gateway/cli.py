"""Command line interface for the Codex gateway."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer

from codex_gateway.client import CodexClient
from codex_gateway.config import Settings, load_settings
from codex_gateway.errors import ConfigurationError, GatewayError
from codex_gateway.logging_utils import configure_logging
from codex_gateway.types import TurnResult

app = typer.Typer(
    name="codex-gateway",
    help="Supervise a Codex app-server and run turns against it.",
    add_completion=False,
)


def _load(*, workdir: Path | None, codex_path: str | None) -> Settings:
    try:
        return load_settings(workdir=workdir, path=codex_path)
    except ConfigurationError as exc:
        typer.echo(f"error: invalid configuration\n{exc}", err=True)
        raise typer.Exit(1) from exc


async def _run_one_turn(settings: Settings, prompt: str, timeout_ms: int | None, model: str | None) -> TurnResult:
    async with CodexClient(settings) as client:
        return await client.queue_turn(prompt, timeout_ms, model)


async def _check(settings: Settings) -> str | None:
    async with CodexClient(settings) as client:
        return client.thread_id


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Turn input text"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model override (default: CODEX_DEFAULT_MODEL)"),
    timeout_ms: int | None = typer.Option(None, "--timeout-ms", min=1, help="Turn deadline in milliseconds"),
    workdir: Path | None = typer.Option(None, "--workdir", "-w", help="App-server working directory"),  # noqa: B008
    codex_path: str | None = typer.Option(None, "--codex-path", help="Codex CLI executable"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
) -> None:
    """Run one turn and print its result."""

    configure_logging(profile="console")
    settings = _load(workdir=workdir, codex_path=codex_path)
    try:
        result = asyncio.run(_run_one_turn(settings, prompt, timeout_ms, model or settings.default_model))
    except GatewayError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc

    if as_json:
        typer.echo(json.dumps(result.to_dict(), ensure_ascii=False))
        return
    typer.echo(result.text)
    typer.echo(f"[usage] input={result.usage.input_tokens} output={result.usage.output_tokens}", err=True)


@app.command()
def check(
    workdir: Path | None = typer.Option(None, "--workdir", "-w", help="App-server working directory"),  # noqa: B008
    codex_path: str | None = typer.Option(None, "--codex-path", help="Codex CLI executable"),
) -> None:
    """Start the app-server, complete the handshake and print the thread id."""

    configure_logging(profile="console")
    settings = _load(workdir=workdir, codex_path=codex_path)
    try:
        thread_id = asyncio.run(_check(settings))
    except GatewayError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(f"ready thread={thread_id}")


@app.command("config")
def show_config() -> None:
    """Print the resolved configuration."""

    settings = _load(workdir=None, codex_path=None)
    typer.echo(settings.model_dump_json(indent=2))
