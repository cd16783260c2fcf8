"""Per-owner preferences (currently just the timezone), last write wins."""

from __future__ import annotations

import logging

from app.types.reminder import UserData
from db.keys import Key
from db.store import KvStore

_LOGGER = logging.getLogger(__name__)


def user_key(owner_id: str) -> Key:
    return ("users", owner_id)


async def get_user_data(store: KvStore, owner_id: str) -> UserData | None:
    entry = await store.get(user_key(owner_id))
    return UserData.model_validate(entry.value) if entry is not None else None


async def upsert_user_data(store: KvStore, owner_id: str, user_data: UserData) -> None:
    await store.atomic().set(user_key(owner_id), user_data.model_dump(mode="json")).commit()
    _LOGGER.debug("Stored settings for %s: %s", owner_id, user_data)
