"""
Ordered key-value store contract plus an in-process implementation.

The store offers three primitives:

* ``get(key)`` – point read returning an :class:`Entry` (value + versionstamp)
* ``commit(checks, sets, deletes)`` – all-or-nothing write, applied only if
  every checked key still carries the expected versionstamp (``None`` means
  "must not exist")
* ``list(prefix, start, end)`` – ordered range scan under a key prefix

Every successful write of a key gives it a fresh versionstamp, so a
read-then-commit pair is an optimistic compare-and-swap.
"""

from __future__ import annotations

import bisect
import copy
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Tuple

from db.keys import Key, encode_key, prefix_range

Check = Tuple[Key, Optional[str]]
Write = Tuple[Key, Any]


@dataclass(frozen=True)
class Entry:
    key: Key
    value: Any
    versionstamp: str


def scan_bounds(prefix: Key, start: Key | None = None, end: Key | None = None) -> tuple[bytes, bytes]:
    """Encoded ``[lower, upper)`` bounds for a ``list`` call."""
    lower, upper = prefix_range(prefix)
    if start is not None:
        lower = max(lower, encode_key(start))
    if end is not None:
        upper = min(upper, encode_key(end))
    return lower, upper


class KvStore(ABC):
    """Abstract ordered key-value store with atomic compare-and-commit."""

    @abstractmethod
    async def get(self, key: Key) -> Entry | None: ...

    @abstractmethod
    async def commit(
        self,
        checks: Sequence[Check] = (),
        sets: Sequence[Write] = (),
        deletes: Sequence[Key] = (),
    ) -> bool:
        """Apply ``sets`` and ``deletes`` atomically if all ``checks`` hold.

        Returns ``False`` (and writes nothing) when any check fails.
        """

    @abstractmethod
    async def list(self, prefix: Key, start: Key | None = None, end: Key | None = None) -> list[Entry]:
        """Entries strictly under ``prefix`` in key order, within ``[start, end)``."""

    async def close(self) -> None:
        return None

    def atomic(self) -> "AtomicOperation":
        return AtomicOperation(self)


class AtomicOperation:
    """Fluent builder for :meth:`KvStore.commit`.

    >>> ok = await store.atomic().check(key, None).set(key, value).commit()
    """

    def __init__(self, store: KvStore):
        self._store = store
        self._checks: list[Check] = []
        self._sets: list[Write] = []
        self._deletes: list[Key] = []

    def check(self, key: Key, versionstamp: str | None) -> "AtomicOperation":
        self._checks.append((key, versionstamp))
        return self

    def check_entry(self, entry: Entry) -> "AtomicOperation":
        return self.check(entry.key, entry.versionstamp)

    def set(self, key: Key, value: Any) -> "AtomicOperation":
        self._sets.append((key, value))
        return self

    def delete(self, key: Key) -> "AtomicOperation":
        self._deletes.append(key)
        return self

    async def commit(self) -> bool:
        return await self._store.commit(self._checks, self._sets, self._deletes)


class MemoryKvStore(KvStore):
    """Process-local store.

    ``commit`` never awaits, so on one event loop each commit is atomic with
    respect to every other store call.
    """

    def __init__(self):
        self._data: dict[bytes, Entry] = {}
        self._order: list[bytes] = []
        self._counter = itertools.count(1)

    def _next_versionstamp(self) -> str:
        return f"{next(self._counter):020x}"

    async def get(self, key: Key) -> Entry | None:
        entry = self._data.get(encode_key(key))
        return copy.deepcopy(entry) if entry is not None else None

    async def commit(
        self,
        checks: Sequence[Check] = (),
        sets: Sequence[Write] = (),
        deletes: Sequence[Key] = (),
    ) -> bool:
        for key, expected in checks:
            current = self._data.get(encode_key(key))
            current_vs = current.versionstamp if current is not None else None
            if current_vs != expected:
                return False

        versionstamp = self._next_versionstamp()
        for key, value in sets:
            raw = encode_key(key)
            if raw not in self._data:
                bisect.insort(self._order, raw)
            self._data[raw] = Entry(key=tuple(key), value=copy.deepcopy(value), versionstamp=versionstamp)
        for key in deletes:
            raw = encode_key(key)
            if self._data.pop(raw, None) is not None:
                idx = bisect.bisect_left(self._order, raw)
                del self._order[idx]
        return True

    async def list(self, prefix: Key, start: Key | None = None, end: Key | None = None) -> list[Entry]:
        lower, upper = scan_bounds(prefix, start, end)
        lo = bisect.bisect_left(self._order, lower)
        hi = bisect.bisect_left(self._order, upper)
        return [copy.deepcopy(self._data[raw]) for raw in self._order[lo:hi]]

    def __len__(self) -> int:
        return len(self._data)

    def keys(self) -> Iterable[Key]:
        return [self._data[raw].key for raw in self._order]
