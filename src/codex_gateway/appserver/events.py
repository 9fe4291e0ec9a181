"""Signal-based fan-out of app-server notifications and session loss."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

from blinker import Signal
from loguru import logger

NotificationListener: TypeAlias = Callable[[dict[str, Any]], None]
SessionLostListener: TypeAlias = Callable[[BaseException], None]


class SessionEvents:
    """Per-session listener registry backed by blinker signals.

    Each subscription returns an unsubscribe callable. A listener that raises
    is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._notifications = Signal("codex.notification")
        self._session_lost = Signal("codex.session_lost")

    def on_notification(self, listener: NotificationListener) -> Callable[[], None]:
        def _receiver(sender: Any, *, message: dict[str, Any]) -> None:
            try:
                listener(message)
            except Exception:
                logger.exception("codex.notification.listener_error method={}", message.get("method"))

        self._notifications.connect(_receiver, weak=False)
        return lambda: self._notifications.disconnect(_receiver)

    def on_session_lost(self, listener: SessionLostListener) -> Callable[[], None]:
        def _receiver(sender: Any, *, error: BaseException) -> None:
            try:
                listener(error)
            except Exception:
                logger.exception("codex.session_lost.listener_error")

        self._session_lost.connect(_receiver, weak=False)
        return lambda: self._session_lost.disconnect(_receiver)

    def emit_notification(self, message: dict[str, Any]) -> None:
        self._notifications.send(self, message=message)

    def emit_session_lost(self, error: BaseException) -> None:
        self._session_lost.send(self, error=error)

    @property
    def notification_listener_count(self) -> int:
        return len(self._notifications.receivers)

    @property
    def session_lost_listener_count(self) -> int:
        return len(self._session_lost.receivers)
