"""
Reminder repository over the key-value store.

Each reminder is written under two keys holding the same value:

    ("reminder",         due_at,   source_id)   – scanned by the sweep
    ("reminder_by_user", owner_id, source_id)   – listed per owner

Both keys are created in one commit and removed in one commit, so callers
never see one without the other. All writes go through this class.
"""

from __future__ import annotations

import logging

from tenacity import AsyncRetrying, retry_if_exception_type

from app.errors import DuplicateReminderError, ReminderValidationError
from app.types.reminder import Reminder
from db.keys import Key
from db.store import KvStore

_LOGGER = logging.getLogger(__name__)

BY_TIME = "reminder"
BY_OWNER = "reminder_by_user"


def time_key(reminder: Reminder) -> Key:
    return (BY_TIME, reminder.due_at, reminder.source_id)


def owner_key(reminder: Reminder) -> Key:
    return (BY_OWNER, reminder.owner_id, reminder.source_id)


class _DeleteConflict(Exception):
    """The by-time entry changed between read and commit."""


def _validate(reminder: Reminder) -> None:
    if not reminder.source_id:
        raise ReminderValidationError("Event id not found.")
    if not reminder.owner_id:
        raise ReminderValidationError("owner_id must be a non-empty string")
    if reminder.due_at < 0:
        raise ReminderValidationError(f"due_at must be >= 0, got {reminder.due_at}")


class ReminderIndex:
    def __init__(self, store: KvStore):
        self._store = store

    @property
    def store(self) -> KvStore:
        return self._store

    async def insert(self, reminder: Reminder) -> None:
        """Write both index entries, or nothing if either already exists.

        Raises:
            ReminderValidationError: missing ids or negative due time.
            DuplicateReminderError: the source id is already scheduled.
            TransientStoreError: the store failed; safe to retry.
        """
        _validate(reminder)
        value = reminder.to_value()
        ok = await (
            self._store.atomic()
            .check(time_key(reminder), None)
            .check(owner_key(reminder), None)
            .set(time_key(reminder), value)
            .set(owner_key(reminder), value)
            .commit()
        )
        if not ok:
            raise DuplicateReminderError(reminder.source_id)
        _LOGGER.info("Reminder %s scheduled for %s at %d", reminder.source_id, reminder.owner_id, reminder.due_at)

    async def list_by_owner(self, owner_id: str) -> list[Reminder]:
        entries = await self._store.list((BY_OWNER, owner_id))
        return [Reminder.model_validate(e.value) for e in entries]

    async def list_due(self, cutoff: int) -> list[Reminder]:
        """Every reminder with ``due_at <= cutoff``, earliest first."""
        entries = await self._store.list((BY_TIME,), end=(BY_TIME, cutoff + 1))
        return [Reminder.model_validate(e.value) for e in entries]

    async def get(self, due_at: int, source_id: str) -> Reminder | None:
        entry = await self._store.get((BY_TIME, due_at, source_id))
        return Reminder.model_validate(entry.value) if entry is not None else None

    async def get_for_owner(self, owner_id: str, source_id: str) -> Reminder | None:
        entry = await self._store.get((BY_OWNER, owner_id, source_id))
        return Reminder.model_validate(entry.value) if entry is not None else None

    async def delete(self, reminder: Reminder) -> None:
        """Remove both entries; a no-op if the reminder is already gone.

        Read the by-time entry, then delete both keys on condition that it is
        unchanged. A concurrent writer makes the commit fail and the cycle
        starts over; the loser of a delete race sees the entry absent on its
        next read and returns.
        Store errors are not retried here and propagate to the caller.
        """
        _validate(reminder)
        tkey, okey = time_key(reminder), owner_key(reminder)

        async for attempt in AsyncRetrying(retry=retry_if_exception_type(_DeleteConflict), reraise=True):
            with attempt:
                entry = await self._store.get(tkey)
                if entry is None:
                    return
                ok = await self._store.atomic().check_entry(entry).delete(tkey).delete(okey).commit()
                if not ok:
                    _LOGGER.debug(
                        "Delete of %s conflicted (attempt %d), retrying",
                        reminder.source_id,
                        attempt.retry_state.attempt_number,
                    )
                    raise _DeleteConflict(reminder.source_id)
        _LOGGER.info("Reminder %s deleted", reminder.source_id)

    async def cancel(self, owner_id: str, source_id: str) -> Reminder | None:
        """Delete ``owner_id``'s reminder for ``source_id``; returns it, or ``None``."""
        reminder = await self.get_for_owner(owner_id, source_id)
        if reminder is None:
            return None
        await self.delete(reminder)
        return reminder
