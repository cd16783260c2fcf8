"""Turns a due reminder into an outbound notification."""

from __future__ import annotations

import logging
from typing import Protocol

from app.errors import DispatchError
from app.types.reminder import MessageRef, Reminder

_LOGGER = logging.getLogger(__name__)

BELL = "((🔔))"


class Messenger(Protocol):
    async def send_reply(self, message: MessageRef, text: str, created_at: int) -> None: ...


def build_notification(reminder: Reminder) -> str:
    text = BELL
    if reminder.comment:
        text += " " + reminder.comment
    return text


class ReminderDispatcher:
    """Callable handed to the sweep: sends one reminder or raises ``DispatchError``."""

    def __init__(self, messenger: Messenger):
        self._messenger = messenger

    async def __call__(self, reminder: Reminder) -> None:
        _LOGGER.debug("Send reminder to %s", reminder.source_id)
        try:
            await self._messenger.send_reply(
                reminder.payload.message,
                build_notification(reminder),
                created_at=reminder.due_at,
            )
        except Exception as exc:  # noqa: BLE001
            raise DispatchError(reminder.source_id, exc) from exc
