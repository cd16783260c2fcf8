"""Pydantic models for reminders and per-user settings.

These are the values written to the key-value store; both index entries of a
reminder hold the same ``model_dump(mode="json")`` dict.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class MessageRef(BaseModel):
    """Enough of an inbound message to reply to it later."""

    id: str
    sender: str
    recipient: Optional[str] = None
    channel: str = "sms"
    text: str = ""
    created_at: int  # epoch seconds


class ReminderPayload(BaseModel):
    message: MessageRef
    comment: Optional[str] = None


class Reminder(BaseModel):
    """A scheduled notification tied to the message that requested it."""

    due_at: int = Field(ge=0)
    owner_id: str
    source_id: str
    payload: ReminderPayload

    @classmethod
    def from_message(cls, message: MessageRef, due_at: int, comment: str | None = None) -> "Reminder":
        return cls(
            due_at=due_at,
            owner_id=message.sender,
            source_id=message.id,
            payload=ReminderPayload(message=message, comment=comment),
        )

    @property
    def comment(self) -> str | None:
        return self.payload.comment

    def to_value(self) -> dict:
        return self.model_dump(mode="json")


class UserData(BaseModel):
    timezone: str = "UTC"

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        from app.utils.dates import is_valid_tz

        if not is_valid_tz(v):
            raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
        return v
