from __future__ import annotations

import logging
from itertools import count
from typing import Dict, Literal, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Notice(BaseModel):
    level: Literal["success", "error", "warning"]
    message: str
    persistent: bool = False
    duration: Optional[float] = Field(
        default=None, description="Seconds on screen; ignored when persistent"
    )


class Notifier(Protocol):
    def notify(self, notice: Notice) -> str: ...

    def dismiss(self, notice_id: str) -> None: ...


class LoggingNotifier:
    """Notifier that writes notices to the log; keeps persistent ones until dismissed."""

    _LEVELS = {"success": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

    def __init__(self) -> None:
        self._ids = count(1)
        self.active: Dict[str, Notice] = {}

    def notify(self, notice: Notice) -> str:
        notice_id = f"notice-{next(self._ids)}"
        logger.log(self._LEVELS[notice.level], "[%s] %s", notice.level, notice.message)
        if notice.persistent:
            self.active[notice_id] = notice
        return notice_id

    def dismiss(self, notice_id: str) -> None:
        self.active.pop(notice_id, None)


def post(notifier: Optional[Notifier], notice: Notice) -> Optional[str]:
    """Fire-and-forget delivery; a broken sink never breaks the caller."""
    if notifier is None:
        return None
    try:
        return notifier.notify(notice)
    except Exception:
        logger.exception("Notifier failed to display %r", notice.message)
        return None


def withdraw(notifier: Optional[Notifier], notice_id: Optional[str]) -> None:
    if notifier is None or notice_id is None:
        return
    try:
        notifier.dismiss(notice_id)
    except Exception:
        logger.exception("Notifier failed to dismiss %s", notice_id)


__all__ = ["LoggingNotifier", "Notice", "Notifier", "post", "withdraw"]
