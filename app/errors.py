"""Error taxonomy for the reminder core.

* ``ReminderValidationError`` – malformed record, caller's fault, never retried
* ``DuplicateReminderError`` – a reminder for this source id already exists;
  callers may treat it as "already scheduled"
* ``TransientStoreError`` – the store could not complete an operation; raised
  to the caller by every index operation. Only version conflicts are retried
  inside a delete. The sweep logs a failed delete and the reminder stays
  stored, so the next tick sends it again
* ``DispatchError`` – sending a notification failed; absorbed by the sweep and
  retried on the next tick
"""

from __future__ import annotations


class ReminderError(Exception):
    """Base class for reminder errors."""


class ReminderValidationError(ReminderError, ValueError):
    pass


class DuplicateReminderError(ReminderError):
    def __init__(self, source_id: str):
        super().__init__(f"Reminder with ID {source_id} already exists")
        self.source_id = source_id


class TransientStoreError(ReminderError):
    pass


class DispatchError(ReminderError):
    def __init__(self, source_id: str, cause: BaseException | None = None):
        msg = f"Failed to dispatch reminder {source_id}"
        if cause is not None:
            msg = f"{msg}: {cause}"
        super().__init__(msg)
        self.source_id = source_id
        self.cause = cause
