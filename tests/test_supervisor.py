from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from codex_gateway.appserver.supervisor import AppServerSupervisor
from codex_gateway.config import Settings
from codex_gateway.errors import (
    ProcessExitError,
    ProtocolIntegrityError,
    RequestTimeout,
    RpcError,
    ShutdownError,
    StartupError,
    TransportError,
)

MakeSettings = Callable[..., Settings]
Received = Callable[[], list[str]]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_ensure_ready_runs_handshake(make_settings: MakeSettings, received: Received) -> None:
    settings = make_settings()
    supervisor = AppServerSupervisor(settings)
    try:
        await supervisor.ensure_ready()

        assert supervisor.thread_id == "thr_1"
        assert supervisor.is_ready
        assert received()[:4] == [
            "initialize",
            "initialized",
            "thread/start",
            f"thread/start:cwd={settings.workdir}:approval=never",
        ]
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_concurrent_ensure_ready_coalesces(make_settings: MakeSettings, received: Received) -> None:
    supervisor = AppServerSupervisor(make_settings())
    try:
        await asyncio.gather(*(supervisor.ensure_ready() for _ in range(5)))
        await supervisor.ensure_ready()

        assert received().count("initialize") == 1
        assert received().count("thread/start") == 1
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_approval_policy_follows_auto_approve(make_settings: MakeSettings, received: Received) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_approve=False))
    try:
        await supervisor.ensure_ready()
        assert any(entry.endswith(":approval=on-request") for entry in received())
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_missing_executable_is_startup_error(make_settings: MakeSettings, tmp_path: Path) -> None:
    supervisor = AppServerSupervisor(make_settings(path=str(tmp_path / "does-not-exist")))

    with pytest.raises(StartupError, match="Codex CLI not found"):
        await supervisor.ensure_ready()
    assert not supervisor.is_running


@pytest.mark.asyncio
async def test_missing_thread_id_is_startup_error(
    make_settings: MakeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_APP_SERVER_MODE", "no_thread")
    supervisor = AppServerSupervisor(make_settings(auto_restart=True))
    try:
        with pytest.raises(StartupError, match="thread/start did not return a thread id."):
            await supervisor.ensure_ready()
        assert supervisor.thread_id is None
        assert not supervisor.is_running
        await asyncio.sleep(0.1)
        assert not supervisor.is_running
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_initialize_error_is_startup_error(make_settings: MakeSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_APP_SERVER_MODE", "initialize_error")
    supervisor = AppServerSupervisor(make_settings())
    try:
        with pytest.raises(StartupError, match="init broke") as exc_info:
            await supervisor.ensure_ready()
        assert isinstance(exc_info.value.__cause__, RpcError)
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_initialize_timeout_is_startup_error(
    make_settings: MakeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_APP_SERVER_MODE", "initialize_hangs")
    supervisor = AppServerSupervisor(make_settings(request_timeout_ms=100))
    try:
        with pytest.raises(StartupError) as exc_info:
            await supervisor.ensure_ready()
        assert isinstance(exc_info.value.__cause__, RequestTimeout)
        assert supervisor.pending_request_count == 0
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_exit_during_handshake_is_startup_error(
    make_settings: MakeSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_APP_SERVER_MODE", "exit_on_initialize")
    supervisor = AppServerSupervisor(make_settings())
    try:
        with pytest.raises(StartupError) as exc_info:
            await supervisor.ensure_ready()
        assert isinstance(exc_info.value.__cause__, ProcessExitError)
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_send_request_before_spawn_is_transport_error(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings())

    with pytest.raises(TransportError):
        await supervisor.send_request("thread/list")
    with pytest.raises(TransportError):
        await supervisor.send_notification("initialized")
    assert supervisor.pending_request_count == 0


@pytest.mark.asyncio
async def test_rpc_error_is_local_to_request(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings())
    try:
        await supervisor.ensure_ready()

        with pytest.raises(RpcError, match="unknown thread/list"):
            await supervisor.send_request("thread/list", {})
        assert supervisor.is_ready
        assert supervisor.pending_request_count == 0
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_notifications_are_broadcast(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings())
    seen: list[dict[str, Any]] = []
    off = supervisor.events.on_notification(seen.append)
    try:
        await supervisor.ensure_ready()
        await supervisor.send_request(
            "turn/start", {"threadId": "thr_1", "input": [{"type": "text", "text": "echo:x", "text_elements": []}]}
        )
        await _wait_until(lambda: any(message["method"] == "turn/completed" for message in seen))

        assert [message["method"] for message in seen] == ["item/completed", "turn/completed"]
    finally:
        off()
        await supervisor.stop()


@pytest.mark.asyncio
async def test_crash_rejects_pending_and_restarts(make_settings: MakeSettings, received: Received) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_restart=True, restart_delay_ms=50))
    lost: list[BaseException] = []
    supervisor.events.on_session_lost(lost.append)
    try:
        await supervisor.ensure_ready()
        first_pid = supervisor.pid
        await supervisor.send_request(
            "turn/start", {"threadId": "thr_1", "input": [{"type": "text", "text": "crash", "text_elements": []}]}
        )
        await _wait_until(lambda: any(isinstance(error, ProcessExitError) for error in lost))
        assert supervisor.thread_id is None

        await _wait_until(lambda: supervisor.is_ready)
        assert supervisor.pid != first_pid
        assert received().count("initialize") == 2
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_crash_without_auto_restart_stays_down(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_restart=False))
    try:
        await supervisor.ensure_ready()
        await supervisor.send_request(
            "turn/start", {"threadId": "thr_1", "input": [{"type": "text", "text": "crash", "text_elements": []}]}
        )
        await _wait_until(lambda: not supervisor.is_running)
        await asyncio.sleep(0.1)

        assert not supervisor.is_running
        await supervisor.ensure_ready()
        assert supervisor.is_ready
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_non_json_line_resets_session(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_restart=True, restart_delay_ms=50))
    lost: list[BaseException] = []
    supervisor.events.on_session_lost(lost.append)
    try:
        await supervisor.ensure_ready()
        first_pid = supervisor.pid
        await supervisor.send_request(
            "turn/start", {"threadId": "thr_1", "input": [{"type": "text", "text": "garbage", "text_elements": []}]}
        )
        await _wait_until(lambda: bool(lost))
        assert isinstance(lost[0], ProtocolIntegrityError)
        assert lost[0].line == "this is not json"

        await _wait_until(lambda: supervisor.is_ready and supervisor.pid != first_pid)
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_terminal(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_restart=True))
    lost: list[BaseException] = []
    supervisor.events.on_session_lost(lost.append)
    await supervisor.ensure_ready()

    await supervisor.stop()
    await supervisor.stop()

    assert not supervisor.is_running
    assert supervisor.thread_id is None
    assert any(isinstance(error, ShutdownError) for error in lost)
    with pytest.raises(StartupError, match="stopping"):
        await supervisor.ensure_ready()
    with pytest.raises(TransportError):
        await supervisor.send_request("thread/list")


@pytest.mark.asyncio
async def test_stop_rejects_pending_requests(make_settings: MakeSettings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_APP_SERVER_MODE", "initialize_hangs")
    supervisor = AppServerSupervisor(make_settings(request_timeout_ms=5_000))
    ready = asyncio.create_task(supervisor.ensure_ready())
    await _wait_until(lambda: supervisor.pending_request_count == 1)

    await supervisor.stop()

    with pytest.raises(StartupError) as exc_info:
        await ready
    assert isinstance(exc_info.value.__cause__, ShutdownError)
    assert supervisor.pending_request_count == 0


@pytest.mark.asyncio
async def test_unencodable_request_is_transport_error(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings())
    try:
        await supervisor.ensure_ready()

        with pytest.raises(TransportError, match="could not be encoded"):
            await supervisor.send_request("thread/list", {"value": object()})
        assert supervisor.pending_request_count == 0
        assert supervisor.is_ready
        with pytest.raises(RpcError, match="unknown thread/list"):
            await supervisor.send_request("thread/list", {})
    finally:
        await supervisor.stop()


@pytest.mark.asyncio
async def test_exit_is_noticed_while_grandchild_holds_stdout(make_settings: MakeSettings) -> None:
    supervisor = AppServerSupervisor(make_settings(auto_restart=True, restart_delay_ms=50))
    lost: list[BaseException] = []
    supervisor.events.on_session_lost(lost.append)
    try:
        await supervisor.ensure_ready()
        first_pid = supervisor.pid
        await supervisor.send_request(
            "turn/start",
            {"threadId": "thr_1", "input": [{"type": "text", "text": "orphan-crash", "text_elements": []}]},
        )

        await _wait_until(lambda: any(isinstance(error, ProcessExitError) for error in lost), timeout=2.0)
        assert supervisor.thread_id is None
        await _wait_until(lambda: supervisor.is_ready and supervisor.pid != first_pid, timeout=2.0)
    finally:
        await supervisor.stop()
