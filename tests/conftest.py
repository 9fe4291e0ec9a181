from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from codex_gateway.config import Settings

FAKE_APP_SERVER = Path(__file__).parent / "fixtures" / "fake_app_server.py"


@pytest.fixture
def app_server_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    log_path = tmp_path / "app-server.log"
    monkeypatch.setenv("FAKE_APP_SERVER_LOG", str(log_path))
    monkeypatch.delenv("FAKE_APP_SERVER_MODE", raising=False)
    return log_path


@pytest.fixture
def fake_codex(tmp_path: Path, app_server_log: Path) -> Path:
    if sys.platform == "win32":
        pytest.skip("fake app-server launcher is a POSIX shell script")
    launcher = tmp_path / "bin" / "codex"
    launcher.parent.mkdir()
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_APP_SERVER}" "$@"\n', encoding="utf-8")
    launcher.chmod(0o755)
    return launcher


@pytest.fixture
def make_settings(tmp_path: Path, fake_codex: Path) -> Callable[..., Settings]:
    workdir = tmp_path / "work"
    workdir.mkdir()

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "path": str(fake_codex),
            "workdir": workdir,
            "request_timeout_ms": 5_000,
            "turn_timeout_ms": 5_000,
            "restart_delay_ms": 50,
            "auto_restart": False,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def received(app_server_log: Path) -> Callable[[], list[str]]:
    def _read() -> list[str]:
        if not app_server_log.exists():
            return []
        return app_server_log.read_text(encoding="utf-8").splitlines()

    return _read
