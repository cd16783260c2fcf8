"""
Periodic sweep: find due reminders, dispatch them, delete the ones that went out.

Delivery is at-least-once. A reminder is deleted only after its dispatch
succeeded; a failed dispatch leaves it in the index and the next tick tries
again. Deletion is idempotent, so a reminder is removed exactly once.

Two sweeps must never work on the same reminders at once, otherwise both
would dispatch them. Each run takes a lease key in the store through
check-and-set and skips the tick if another holder's lease is still live.
While the sweep runs the lease is renewed in the background; if a renewal
fails the sweep is cancelled, since another sweeper may take over once the
lease expires.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import uuid4

from app.services.reminder_index import ReminderIndex
from app.types.reminder import Reminder
from app.utils.dates import unix_now
from db.store import KvStore

_LOGGER = logging.getLogger(__name__)

LEASE_KEY = ("sweep_lease",)

Dispatch = Callable[[Reminder], Awaitable[None]]


@dataclass
class SweepReport:
    due: int = 0
    sent: int = 0
    deleted: int = 0
    failed: int = 0
    skipped: bool = False
    aborted: bool = False


class SweepLease:
    """Store-backed mutual exclusion between sweeps, with expiry.

    The expiry bounds how long a crashed sweeper can block the others.
    """

    def __init__(self, store: KvStore, ttl: int, clock: Callable[[], int] = unix_now):
        self._store = store
        self._ttl = ttl
        self._clock = clock

    async def acquire(self, holder: str) -> bool:
        now = self._clock()
        entry = await self._store.get(LEASE_KEY)
        if entry is not None and entry.value.get("expires_at", 0) > now:
            return False
        return await (
            self._store.atomic()
            .check(LEASE_KEY, entry.versionstamp if entry is not None else None)
            .set(LEASE_KEY, {"holder": holder, "expires_at": now + self._ttl})
            .commit()
        )

    async def release(self, holder: str) -> bool:
        entry = await self._store.get(LEASE_KEY)
        if entry is None or entry.value.get("holder") != holder:
            _LOGGER.warning("Sweep lease of %s expired before release", holder)
            return False
        return await self._store.atomic().check_entry(entry).delete(LEASE_KEY).commit()

    async def renew(self, holder: str) -> bool:
        """Push the expiry of ``holder``'s lease out by another ttl."""
        entry = await self._store.get(LEASE_KEY)
        if entry is None or entry.value.get("holder") != holder:
            return False
        return await (
            self._store.atomic()
            .check_entry(entry)
            .set(LEASE_KEY, {"holder": holder, "expires_at": self._clock() + self._ttl})
            .commit()
        )


class Sweeper:
    def __init__(
        self,
        index: ReminderIndex,
        dispatch: Dispatch,
        *,
        concurrency: int = 10,
        lease_ttl: int = 120,
        renew_interval: float | None = None,
        clock: Callable[[], int] = unix_now,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._index = index
        self._dispatch = dispatch
        self._concurrency = concurrency
        self._clock = clock
        self._lease = SweepLease(index.store, lease_ttl, clock)
        self._renew_interval = lease_ttl / 3 if renew_interval is None else renew_interval

    async def run_once(self, now: int | None = None) -> SweepReport:
        """One tick. Never raises for per-reminder failures."""
        holder = uuid4().hex
        if not await self._lease.acquire(holder):
            _LOGGER.info("Another sweep is running; skipping tick")
            return SweepReport(skipped=True)
        sweep = asyncio.create_task(self._sweep(self._clock() if now is None else now))
        heartbeat = asyncio.create_task(self._keep_lease(holder, sweep))
        try:
            return await sweep
        except asyncio.CancelledError:
            if not heartbeat.done():
                raise
            # the heartbeat gave up the lease and cancelled the sweep
            return SweepReport(aborted=True)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._lease.release(holder)

    async def _keep_lease(self, holder: str, sweep: asyncio.Task) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                renewed = await self._lease.renew(holder)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Could not renew sweep lease")
                renewed = False
            if not renewed:
                _LOGGER.error("Sweep lease of %s lost; stopping the sweep", holder)
                sweep.cancel()
                return

    async def _sweep(self, now: int) -> SweepReport:
        candidates = [r for r in await self._index.list_due(now) if r.due_at <= now]
        report = SweepReport(due=len(candidates))
        if not candidates:
            return report

        sem = asyncio.Semaphore(self._concurrency)
        outcomes = await asyncio.gather(*(self._process(r, sem) for r in candidates))
        for sent, deleted in outcomes:
            report.sent += sent
            report.deleted += deleted
            report.failed += not sent
        _LOGGER.info(
            "Sweep at %d: %d due, %d sent, %d deleted, %d failed",
            now, report.due, report.sent, report.deleted, report.failed,
        )
        return report

    async def _process(self, reminder: Reminder, sem: asyncio.Semaphore) -> tuple[bool, bool]:
        async with sem:
            try:
                await self._dispatch(reminder)
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("Dispatch of %s failed, will retry next tick: %s", reminder.source_id, exc)
                return False, False
        try:
            await self._index.delete(reminder)
        except Exception:  # noqa: BLE001
            # Still in the index, so it will be sent again
            _LOGGER.exception("Reminder %s sent but not deleted", reminder.source_id)
            return True, False
        return True, True

    async def run_forever(self, interval: float, stop: asyncio.Event | None = None) -> None:
        """Run ticks back to back every ``interval`` seconds until ``stop`` is set.

        Ticks never overlap: the next one starts only after the previous
        returned. Cancelling the task abandons in-flight dispatches; their
        reminders stay in the index.
        """
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        while not stop.is_set():
            started = loop.time()
            try:
                await self.run_once()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Sweep tick failed")
            remaining = max(0.0, interval - (loop.time() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
