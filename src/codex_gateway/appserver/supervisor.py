"""Supervision of the Codex app-server child process."""

from __future__ import annotations

import asyncio
import os
import shutil
from contextlib import suppress
from typing import Any

from loguru import logger

from codex_gateway.appserver.correlator import RequestCorrelator
from codex_gateway.appserver.events import SessionEvents
from codex_gateway.appserver.protocol import (
    MessageKind,
    build_notification,
    build_request,
    build_result,
    classify,
    decode_frame,
    encode_frame,
    unsupported_method_error,
)
from codex_gateway.appserver.responder import build_server_request_result
from codex_gateway.config import Settings
from codex_gateway.errors import (
    GatewayError,
    ProcessExitError,
    ProtocolIntegrityError,
    SessionLostError,
    ShutdownError,
    StartupError,
    TransportError,
)

APP_SERVER_ARGS = ("app-server", "--listen", "stdio://")
STREAM_LIMIT_BYTES = 64 * 1024 * 1024
TERMINATE_GRACE_SECONDS = 2.0
EXIT_POLL_SECONDS = 0.05
EXIT_DRAIN_SECONDS = 0.5


def resolve_command(command: str) -> str:
    """Resolve the executable through PATH (and PATHEXT on Windows)."""
    return shutil.which(command) or command


class AppServerSupervisor:
    """Owns the app-server process, its wire protocol and its single thread.

    All state is mutated from the event loop only: the read loop, the exit
    watcher, the restart task and the public coroutines.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.events = SessionEvents()
        self._correlator = RequestCorrelator()
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._ready_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._thread_id: str | None = None
        self._stopping = False

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def is_ready(self) -> bool:
        return self._thread_id is not None and self.is_running

    @property
    def pending_request_count(self) -> int:
        return len(self._correlator)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def ensure_ready(self) -> None:
        """Spawn and handshake if needed; concurrent callers share one attempt."""
        if self._stopping:
            raise StartupError("Codex client is stopping.")
        if self.is_ready:
            return

        if self._ready_task is None:
            task = asyncio.create_task(self._start())
            task.add_done_callback(self._clear_ready_task)
            self._ready_task = task
        await asyncio.shield(self._ready_task)

    async def send_request(self, method: str, params: Any = None, *, timeout_ms: int | None = None) -> Any:
        self._writable_stdin()
        pending = self._correlator.register(method, timeout_ms or self.settings.request_timeout_ms)
        logger.debug("codex.request id={} method={}", pending.request_id, method)
        try:
            await self._write(build_request(pending.request_id, method, params))
            return await pending.future
        finally:
            # No-op once settled; otherwise the write failed or the caller gave up.
            self._correlator.discard(pending.request_id)

    async def send_notification(self, method: str, params: Any = None) -> None:
        await self._write(build_notification(method, params))

    async def stop(self) -> None:
        if not self._stopping:
            logger.info("codex.stopping pid={}", self.pid)
        self._stopping = True
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None
        await self._terminate_process(ShutdownError())

    async def _start(self) -> None:
        process = await self._spawn()
        try:
            await self._handshake()
        except GatewayError as exc:
            if self._process is process:
                await self._terminate_process(ProcessExitError())
            if isinstance(exc, StartupError):
                raise
            raise StartupError(f"Codex app-server handshake failed: {exc}") from exc

    def _clear_ready_task(self, task: asyncio.Task[None]) -> None:
        if self._ready_task is task:
            self._ready_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("codex.start.failed error={}", task.exception())

    async def _spawn(self) -> asyncio.subprocess.Process:
        if self._process is not None:
            await self._terminate_process(ProcessExitError())

        workdir = self.settings.workdir
        if not workdir.is_dir():
            raise StartupError(f"Codex workdir does not exist: {workdir}")

        command = resolve_command(self.settings.path)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *APP_SERVER_ARGS,
                cwd=str(workdir),
                env=dict(os.environ),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            logger.error("codex.spawn.not_found command={}", command)
            raise StartupError(
                f'Codex CLI not found at "{self.settings.path}". '
                "Install Codex or set CODEX_PATH to the full path of the codex executable."
            ) from exc
        except OSError as exc:
            logger.error("codex.spawn.failed command={} error={}", command, exc)
            raise StartupError(f"Failed to spawn Codex app-server: {exc}") from exc

        self._process = process
        self._reader_task = asyncio.create_task(self._read_loop(process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process, self._reader_task, self._stderr_task))
        logger.info("codex.spawned pid={} command={} cwd={}", process.pid, command, workdir)

        if self._stopping:
            await self._terminate_process(ShutdownError())
            raise StartupError("Codex client is stopping.")
        return process

    async def _handshake(self) -> None:
        await self.send_request(
            "initialize",
            {
                "clientInfo": {"name": self.settings.client_name, "version": self.settings.client_version},
                "capabilities": None,
            },
        )
        await self.send_notification("initialized")

        response = await self.send_request(
            "thread/start",
            {
                "cwd": str(self.settings.workdir),
                "approvalPolicy": self.settings.approval_policy,
                "sandbox": self.settings.sandbox,
                "experimentalRawEvents": False,
                "persistExtendedHistory": False,
            },
        )
        thread = response.get("thread") if isinstance(response, dict) else None
        thread_id = thread.get("id") if isinstance(thread, dict) else None
        if not thread_id:
            raise StartupError("thread/start did not return a thread id.")

        self._thread_id = thread_id
        logger.info("codex.ready thread={}", thread_id)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError:
                logger.warning("codex.frame.oversized limit={}", STREAM_LIMIT_BYTES)
                self._reset_session(ProtocolIntegrityError("<oversized frame>"))
                continue
            if not line:
                return
            try:
                self._handle_line(line)
            except Exception:
                logger.exception("codex.frame.error")

    async def _watch_exit(self, process: asyncio.subprocess.Process, *streams: asyncio.Task[None]) -> None:
        returncode = await _wait_for_returncode(process)
        # Frames written before the exit are still routed, but a grandchild
        # holding the inherited pipes open must not delay exit handling.
        _, pending = await asyncio.wait(streams, timeout=EXIT_DRAIN_SECONDS)
        for task in pending:
            task.cancel()
        self._handle_exit(process, returncode)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.warning("codex.stderr {}", text)

    def _handle_line(self, line: bytes) -> None:
        try:
            message = decode_frame(line)
        except ProtocolIntegrityError as exc:
            logger.warning("codex.frame.non_json line={}", exc.line)
            self._reset_session(exc)
            return
        if message is None:
            return

        kind = classify(message)
        if kind is MessageKind.SERVER_REQUEST:
            self._handle_server_request(message)
        elif kind is MessageKind.RESPONSE:
            self._correlator.settle_response(message)
        elif kind is MessageKind.NOTIFICATION:
            self.events.emit_notification(message)
        else:
            logger.warning("codex.frame.ignored message={}", message)

    def _handle_server_request(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        method = message["method"]
        try:
            reply = build_result(
                request_id,
                build_server_request_result(method, message.get("params"), auto_approve=self.settings.auto_approve),
            )
        except Exception as exc:
            # Unknown methods and malformed params both get the unsupported error frame.
            logger.warning("codex.server_request.unsupported id={} method={} error={}", request_id, method, exc)
            reply = unsupported_method_error(request_id, method)
        else:
            logger.info("codex.server_request.answered id={} method={}", request_id, method)

        try:
            self._writable_stdin().write(encode_frame(reply))
        except TransportError as exc:
            logger.warning("codex.server_request.reply_failed id={} error={}", request_id, exc)

    def _reset_session(self, error: ProtocolIntegrityError) -> None:
        logger.warning("codex.session.reset thread={} reason=protocol_integrity", self._thread_id)
        self._thread_id = None
        self._fail_in_flight(error)
        process = self._process
        if process is not None and process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()

    def _handle_exit(self, process: asyncio.subprocess.Process, returncode: int) -> None:
        if process is not self._process:
            return
        logger.warning("codex.exited pid={} returncode={}", process.pid, returncode)
        self._process = None
        self._thread_id = None
        self._fail_in_flight(ProcessExitError(returncode))

        if self._stopping or not self.settings.auto_restart:
            return
        self._schedule_restart()

    def _fail_in_flight(self, error: SessionLostError) -> None:
        failed = self._correlator.fail_all(error)
        if failed:
            logger.warning("codex.requests.failed count={} error={}", failed, error)
        self.events.emit_session_lost(error)

    def _schedule_restart(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            return
        self._restart_task = asyncio.create_task(self._restart_after_delay())

    async def _restart_after_delay(self) -> None:
        delay_ms = self.settings.restart_delay_ms
        logger.info("codex.restart.scheduled delay_ms={}", delay_ms)
        await asyncio.sleep(delay_ms / 1000)
        # A failure during this attempt may schedule the next one.
        self._restart_task = None
        try:
            await self.ensure_ready()
        except GatewayError as exc:
            logger.error("codex.restart.failed error={}", exc)

    async def _terminate_process(self, error: SessionLostError) -> None:
        process = self._process
        tasks = [task for task in (self._reader_task, self._stderr_task, self._exit_task) if task is not None]
        self._process = None
        self._reader_task = None
        self._stderr_task = None
        self._exit_task = None
        self._thread_id = None
        self._fail_in_flight(error)

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if process is None or process.returncode is not None:
            return
        if process.stdin is not None:
            process.stdin.close()
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(_wait_for_returncode(process), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("codex.terminate.kill pid={}", process.pid)
            with suppress(ProcessLookupError):
                process.kill()
            await _wait_for_returncode(process)
        logger.info("codex.terminated pid={} returncode={}", process.pid, process.returncode)

    def _writable_stdin(self) -> asyncio.StreamWriter:
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None or process.stdin.is_closing():
            raise TransportError("Codex app-server stdin is not writable.")
        return process.stdin

    async def _write(self, message: dict[str, Any]) -> None:
        stdin = self._writable_stdin()
        try:
            frame = encode_frame(message)
        except (TypeError, ValueError) as exc:
            raise TransportError(f"Codex frame could not be encoded: {exc}") from exc
        stdin.write(frame)
        try:
            await stdin.drain()
        except ConnectionError as exc:
            raise TransportError(f"Codex app-server stdin is not writable: {exc}") from exc


async def _wait_for_returncode(process: asyncio.subprocess.Process) -> int:
    """Wait for the process itself to exit.

    ``Process.wait()`` also waits for the stdio pipes to close, which never
    happens while a grandchild still holds them.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return process.returncode
