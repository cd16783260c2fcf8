import asyncio

import pytest

from app.errors import DispatchError, TransientStoreError
from app.services.dispatch import BELL, ReminderDispatcher, build_notification
from app.services.reminder_index import ReminderIndex
from app.services.sweep import LEASE_KEY, SweepLease, Sweeper
from db.store import MemoryKvStore
from tests.conftest import NOW, make_reminder, reminder_keys


class RecordingDispatch:
    def __init__(self, fail_times: int = 0, fail_ids: tuple = ()):
        self.fail_times = fail_times
        self.fail_ids = set(fail_ids)
        self.calls: list[str] = []

    async def __call__(self, reminder):
        self.calls.append(reminder.source_id)
        if reminder.source_id in self.fail_ids:
            raise DispatchError(reminder.source_id)
        if self.fail_times:
            self.fail_times -= 1
            raise DispatchError(reminder.source_id)


def make_sweeper(index, dispatch, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    return Sweeper(index, dispatch, **kwargs)


@pytest.mark.asyncio
async def test_due_reminder_is_sent_then_deleted(index):
    await index.insert(make_reminder("abc", due_at=NOW))
    dispatch = RecordingDispatch()

    report = await make_sweeper(index, dispatch).run_once()

    assert dispatch.calls == ["abc"]
    assert (report.due, report.sent, report.deleted, report.failed) == (1, 1, 1, 0)
    assert await index.list_by_owner("u1") == []


@pytest.mark.asyncio
async def test_future_reminder_is_left_alone(index):
    reminder = make_reminder("abc", due_at=NOW + 1)
    await index.insert(reminder)
    dispatch = RecordingDispatch()

    report = await make_sweeper(index, dispatch).run_once()

    assert dispatch.calls == []
    assert report.due == 0
    assert await index.list_by_owner("u1") == [reminder]


@pytest.mark.asyncio
async def test_failed_sends_retry_until_success_and_delete_once(index, store):
    reminder = make_reminder("abc", due_at=NOW - 10)
    await index.insert(reminder)
    dispatch = RecordingDispatch(fail_times=3)
    sweeper = make_sweeper(index, dispatch)

    for _ in range(3):
        report = await sweeper.run_once()
        assert report.failed == 1
        assert await index.list_by_owner("u1") == [reminder]

    report = await sweeper.run_once()
    assert report.deleted == 1
    assert dispatch.calls == ["abc"] * 4
    assert await reminder_keys(store) == []

    # nothing left to send
    await sweeper.run_once()
    assert dispatch.calls == ["abc"] * 4


@pytest.mark.asyncio
async def test_one_failure_does_not_block_others(index):
    for sid in ("a", "b", "c"):
        await index.insert(make_reminder(sid, due_at=NOW))
    dispatch = RecordingDispatch(fail_ids=("b",))

    report = await make_sweeper(index, dispatch).run_once()

    assert sorted(dispatch.calls) == ["a", "b", "c"]
    assert (report.sent, report.failed) == (2, 1)
    assert [r.source_id for r in await index.list_by_owner("u1")] == ["b"]


@pytest.mark.asyncio
async def test_out_of_range_results_are_filtered(store):
    class LooseIndex(ReminderIndex):
        async def list_due(self, cutoff):
            return await super().list_due(cutoff + 3600)

    index = LooseIndex(store)
    await index.insert(make_reminder("late", due_at=NOW + 60))
    dispatch = RecordingDispatch()

    await make_sweeper(index, dispatch).run_once()

    assert dispatch.calls == []


@pytest.mark.asyncio
async def test_dispatch_fan_out_is_bounded(index):
    for i in range(6):
        await index.insert(make_reminder(f"r{i}", due_at=NOW))
    active = 0
    peak = 0

    async def slow_dispatch(reminder):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    report = await make_sweeper(index, slow_dispatch, concurrency=2).run_once()

    assert report.deleted == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_live_lease_skips_tick(index, store):
    await index.insert(make_reminder("abc", due_at=NOW))
    assert await SweepLease(store, ttl=120, clock=lambda: NOW).acquire("other-sweeper")
    dispatch = RecordingDispatch()

    report = await make_sweeper(index, dispatch).run_once()

    assert report.skipped
    assert dispatch.calls == []


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(index, store):
    await index.insert(make_reminder("abc", due_at=NOW))
    assert await SweepLease(store, ttl=120, clock=lambda: NOW - 600).acquire("crashed-sweeper")
    dispatch = RecordingDispatch()

    report = await make_sweeper(index, dispatch).run_once()

    assert not report.skipped
    assert dispatch.calls == ["abc"]
    assert await store.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_overlapping_sweeps_dispatch_once(index):
    await index.insert(make_reminder("abc", due_at=NOW))
    calls = []

    async def slow_dispatch(reminder):
        calls.append(reminder.source_id)
        await asyncio.sleep(0.01)

    sweeper = make_sweeper(index, slow_dispatch)
    reports = await asyncio.gather(sweeper.run_once(), sweeper.run_once())

    assert calls == ["abc"]
    assert sorted(r.skipped for r in reports) == [False, True]


@pytest.mark.asyncio
async def test_lease_is_renewed_while_dispatch_runs(index, store):
    await index.insert(make_reminder("abc", due_at=NOW))
    clock = [NOW]
    started = asyncio.Event()
    finish = asyncio.Event()
    calls = []

    async def slow_dispatch(reminder):
        calls.append(reminder.source_id)
        # the send outlives the lease ttl
        clock[0] += 200
        started.set()
        await finish.wait()

    first = make_sweeper(index, slow_dispatch, lease_ttl=120, renew_interval=0.01, clock=lambda: clock[0])
    second = make_sweeper(index, slow_dispatch, lease_ttl=120, clock=lambda: clock[0])
    task = asyncio.create_task(first.run_once())
    await started.wait()
    for _ in range(200):
        if (await store.get(LEASE_KEY)).value["expires_at"] > clock[0]:
            break
        await asyncio.sleep(0.01)

    report = await asyncio.wait_for(second.run_once(), timeout=2)
    assert report.skipped

    finish.set()
    report = await task
    assert report.deleted == 1
    assert calls == ["abc"]
    assert await store.get(LEASE_KEY) is None


@pytest.mark.asyncio
async def test_sweep_stops_when_lease_is_lost(index, store):
    await index.insert(make_reminder("abc", due_at=NOW))
    started = asyncio.Event()

    async def stuck_dispatch(reminder):
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(make_sweeper(index, stuck_dispatch, renew_interval=0.01).run_once())
    await started.wait()
    await store.atomic().set(LEASE_KEY, {"holder": "other-sweeper", "expires_at": NOW + 600}).commit()

    report = await asyncio.wait_for(task, timeout=2)

    assert report.aborted
    assert report.deleted == 0
    assert [r.source_id for r in await index.list_by_owner("u1")] == ["abc"]
    assert (await store.get(LEASE_KEY)).value["holder"] == "other-sweeper"


class FailingDeleteStore(MemoryKvStore):
    """Store whose commits that remove reminder keys always fail."""

    async def commit(self, checks=(), sets=(), deletes=()):
        if any(key[0] == "reminder" for key in deletes):
            raise TransientStoreError("store unavailable")
        return await super().commit(checks, sets, deletes)


@pytest.mark.asyncio
async def test_store_error_on_delete_keeps_reminder_for_next_tick():
    store = FailingDeleteStore()
    index = ReminderIndex(store)
    reminder = make_reminder("abc", due_at=NOW)
    await index.insert(reminder)
    dispatch = RecordingDispatch()

    with pytest.raises(TransientStoreError):
        await index.delete(reminder)

    report = await make_sweeper(index, dispatch).run_once()

    assert (report.sent, report.deleted, report.failed) == (1, 0, 0)
    assert await index.list_by_owner("u1") == [reminder]
    assert await store.get(LEASE_KEY) is None
    await make_sweeper(index, dispatch).run_once()
    assert dispatch.calls == ["abc", "abc"]

@pytest.mark.asyncio
async def test_run_forever_stops_on_event(index):
    await index.insert(make_reminder("abc", due_at=NOW))
    stop = asyncio.Event()

    async def dispatch(reminder):
        stop.set()

    await asyncio.wait_for(make_sweeper(index, dispatch).run_forever(3600, stop), timeout=2)

    assert await index.list_by_owner("u1") == []


def test_notification_text():
    assert build_notification(make_reminder(comment="buy milk")) == f"{BELL} buy milk"
    assert build_notification(make_reminder(comment="")) == BELL
    assert build_notification(make_reminder()) == "((🔔))"


@pytest.mark.asyncio
async def test_dispatcher_replies_at_due_time(messenger):
    reminder = make_reminder(due_at=NOW + 60, comment="stretch")

    await ReminderDispatcher(messenger)(reminder)

    message, text, created_at = messenger.sent[0]
    assert message == reminder.payload.message
    assert text == "((🔔)) stretch"
    assert created_at == NOW + 60


@pytest.mark.asyncio
async def test_dispatcher_wraps_send_errors():
    class Broken:
        async def send_reply(self, message, text, created_at):
            raise ConnectionError("relay down")

    with pytest.raises(DispatchError) as info:
        await ReminderDispatcher(Broken())(make_reminder("abc"))
    assert info.value.source_id == "abc"
    assert isinstance(info.value.cause, ConnectionError)
