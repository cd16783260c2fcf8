"""Wires the store, index, sweep and command handler from ``config.settings``."""

from __future__ import annotations

from dataclasses import dataclass

from app.services.commands import CommandHandler
from app.services.dispatch import Messenger, ReminderDispatcher
from app.services.reminder_index import ReminderIndex
from app.services.sweep import Sweeper
from app.utils.sms import SmsMessenger
from config import settings
from db.db import open_store
from db.store import KvStore


@dataclass
class Services:
    store: KvStore
    index: ReminderIndex
    sweeper: Sweeper
    commands: CommandHandler

    async def close(self) -> None:
        await self.store.close()


def build_services(store: KvStore, messenger: Messenger | None = None) -> Services:
    messenger = messenger or SmsMessenger()
    index = ReminderIndex(store)
    sweeper = Sweeper(
        index,
        ReminderDispatcher(messenger),
        concurrency=settings.DISPATCH_CONCURRENCY,
        lease_ttl=settings.SWEEP_LEASE_TTL_SEC,
    )
    commands = CommandHandler(
        index,
        messenger,
        bot_id=settings.BOT_ID,
        cool_time=settings.COOL_TIME_DUR_SEC,
        default_timezone=settings.DEFAULT_TIMEZONE,
    )
    return Services(store=store, index=index, sweeper=sweeper, commands=commands)


async def open_services(messenger: Messenger | None = None) -> Services:
    store = await open_store(settings.DATABASE_URL or settings.DATABASE_PUBLIC_URL)
    return build_services(store, messenger)
