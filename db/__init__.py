from .keys import Key, decode_key, encode_key
from .store import AtomicOperation, Entry, KvStore, MemoryKvStore
from .db import Base, KvEntry, SqlKvStore, open_store  # noqa: F401
