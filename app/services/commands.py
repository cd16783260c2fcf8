"""
Inbound command handling.

Messages look like::

    !remindme tomorrow 9am "call the bank"
    !remindme TZ Asia/Tokyo
    !remindme LIST
    !remindme DELETE 3fa4c1
    !remindme DELETE ALL

Text inside double quotes is the comment attached to the reminder; the
rest is the command.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from app.errors import DuplicateReminderError
from app.services.dispatch import Messenger
from app.services.reminder_index import ReminderIndex
from app.services.user_settings import get_user_data, upsert_user_data
from app.types.reminder import MessageRef, Reminder, UserData
from app.utils.dates import format_tz, is_valid_tz, parse_due_time, unix_now

_LOGGER = logging.getLogger(__name__)

COMMAND_RE = re.compile(r"^!remindme\b", re.IGNORECASE)
COMMENT_RE = re.compile(r'"(.*)"')
TZ_RE = re.compile(r"^TZ\b", re.IGNORECASE)
LIST_RE = re.compile(r"^LIST\b", re.IGNORECASE)
DELETE_RE = re.compile(r"^DELETE\b", re.IGNORECASE)

ID_DISPLAY_LEN = 8


@dataclass
class ParsedCommand:
    action: str  # "tz", "list", "delete" or "add"
    argument: str
    comment: Optional[str] = None


def parse_command(text: str) -> ParsedCommand | None:
    """``None`` unless ``text`` is a ``!remindme`` command."""
    if not text or not COMMAND_RE.match(text):
        return None
    content = COMMAND_RE.sub("", text, count=1).strip()

    comment = None
    quote = content.find('"')
    if quote != -1:
        match = COMMENT_RE.search(content[quote:])
        comment = match.group(1).strip() if match else None
        command = content[:quote].strip()
    else:
        command = content

    for action, regex in (("tz", TZ_RE), ("list", LIST_RE), ("delete", DELETE_RE)):
        if regex.match(command):
            return ParsedCommand(action, regex.sub("", command, count=1).strip(), comment)
    return ParsedCommand("add", command, comment)


class CommandHandler:
    def __init__(
        self,
        index: ReminderIndex,
        messenger: Messenger,
        *,
        bot_id: str = "",
        cool_time: int = 60,
        default_timezone: str = "UTC",
        clock: Callable[[], int] = unix_now,
    ):
        self._index = index
        self._messenger = messenger
        self._bot_id = bot_id
        self._cool_time = cool_time
        self._default_timezone = default_timezone
        self._clock = clock

    async def handle(self, message: MessageRef) -> None:
        parsed = parse_command(message.text)
        if parsed is None or not message.id:
            return
        if self._bot_id and message.sender == self._bot_id:
            return
        if message.created_at < self._clock() - self._cool_time:
            _LOGGER.info("Ignoring stale message %s", message.id)
            return

        _LOGGER.info("received message %s: %s", message.id, message.text)
        user = await get_user_data(self._index.store, message.sender) or UserData(timezone=self._default_timezone)

        if parsed.action == "tz":
            await self._set_timezone(message, parsed.argument)
        elif parsed.action == "list":
            await self._list(message, user)
        elif parsed.action == "delete":
            await self._delete(message, parsed.argument)
        else:
            await self._add(message, parsed, user)

    async def _reply(self, message: MessageRef, text: str) -> None:
        await self._messenger.send_reply(message, text, created_at=message.created_at + 1)

    async def _set_timezone(self, message: MessageRef, timezone: str) -> None:
        if not is_valid_tz(timezone):
            _LOGGER.debug("invalid TZ: %s", timezone)
            await self._reply(message, "Provided timezone invalid.")
            return
        await upsert_user_data(self._index.store, message.sender, UserData(timezone=timezone))
        await self._reply(message, f"Timezone set to {timezone}")

    async def _list(self, message: MessageRef, user: UserData) -> None:
        reminders = sorted(await self._index.list_by_owner(message.sender), key=lambda r: r.due_at)
        if not reminders:
            await self._reply(message, "No reminders.")
            return
        lines = [f"Your reminders ({user.timezone}):"]
        for r in reminders:
            line = f"{r.source_id[:ID_DISPLAY_LEN]}  {format_tz(r.due_at, user.timezone)}"
            if r.comment:
                line += f"  {r.comment}"
            lines.append(line)
        await self._reply(message, "\n".join(lines))

    async def _delete(self, message: MessageRef, target: str) -> None:
        if not target:
            await self._reply(message, "Usage: DELETE <id>|ALL")
            return
        reminders = await self._index.list_by_owner(message.sender)

        if target.upper() == "ALL":
            for r in reminders:
                await self._index.delete(r)
            await self._reply(message, f"Deleted {len(reminders)} reminder(s).")
            return

        matches = [r for r in reminders if r.source_id.startswith(target)]
        if not matches:
            await self._reply(message, f"No reminder found with ID {target}")
        elif len(matches) > 1:
            await self._reply(message, f"ID {target} matches {len(matches)} reminders; use a longer prefix.")
        else:
            await self._index.delete(matches[0])
            await self._reply(message, f"Deleted reminder {matches[0].source_id[:ID_DISPLAY_LEN]}")

    async def _add(self, message: MessageRef, parsed: ParsedCommand, user: UserData) -> None:
        now = self._clock()
        due_at = parse_due_time(parsed.argument, user.timezone, now=now)
        if due_at is None or due_at <= now:
            _LOGGER.info("Could not resolve a future time from %r", parsed.argument)
            await self._reply(message, "Could not understand when to remind you.")
            return

        reminder = Reminder.from_message(message, due_at, parsed.comment or None)
        try:
            await self._index.insert(reminder)
        except DuplicateReminderError:
            _LOGGER.info("Reminder for %s already scheduled", message.id)
            return
        await self._reply(
            message,
            f"I will remind at {format_tz(due_at, user.timezone)} ({user.timezone})",
        )
