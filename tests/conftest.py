import pytest
import pytest_asyncio
from app.services.reminder_index import ReminderIndex
from app.types.reminder import MessageRef, Reminder
from db.db import SqlKvStore, create_engine
from db.store import MemoryKvStore

# 2026-01-01T00:00:00Z
NOW = 1_767_225_600


def make_message(msg_id: str = "abc", sender: str = "u1", text: str = "", created_at: int = NOW) -> MessageRef:
    return MessageRef(id=msg_id, sender=sender, recipient="+15550000000", text=text, created_at=created_at)


def make_reminder(source_id: str = "abc", owner_id: str = "u1", due_at: int = NOW + 60, comment: str | None = None) -> Reminder:
    return Reminder.from_message(make_message(source_id, owner_id), due_at, comment)


class FakeMessenger:
    def __init__(self):
        self.sent: list[tuple[MessageRef, str, int]] = []

    async def send_reply(self, message, text, created_at):
        self.sent.append((message, text, created_at))

    @property
    def texts(self) -> list[str]:
        return [text for _, text, _ in self.sent]


@pytest.fixture
def index(store):
    return ReminderIndex(store)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def kv(request, tmp_path):
    if request.param == "memory":
        yield MemoryKvStore()
        return
    # a file, so each session gets its own connection as in production
    store = SqlKvStore(create_engine(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}"))
    await store.create_all()
    try:
        yield store
    finally:
        await store.close()


@pytest.fixture
def store(kv):
    return kv


async def reminder_keys(store) -> list:
    """Keys of both reminder views."""
    entries = await store.list(("reminder",)) + await store.list(("reminder_by_user",))
    return [e.key for e in entries]
