from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict, List, Optional

from snipr.clock import Clock
from snipr.db import ListingStore
from snipr.records import ListingRecord

log = logging.getLogger("snipr.corral")


class EntryCorral:
    """Keyed store of listing records with read/write borrowing.

    Records live in a ``ListingStore``; a bounded LRU cache sits in front of
    it. Readers get a private copy. Writers get a working copy under a
    per-identifier lock, and a changed copy replaces the stored record in
    one step when the borrow ends without an exception.
    """

    def __init__(self, store: ListingStore, clock: Clock, cache_size: int = 512,
                 ending_window: timedelta = timedelta(hours=1)):
        self._store = store
        self._clock = clock
        self._cache_size = cache_size
        self._ending_window = ending_window
        self._cache: OrderedDict[str, ListingRecord] = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    # ---- borrowing -------------------------------------------------------

    def _materialize(self, identifier: str) -> Optional[ListingRecord]:
        record = self._cache.get(identifier)
        if record is not None:
            self._cache.move_to_end(identifier)
            return record
        record = self._store.get(identifier)
        if record is not None:
            self._remember(record)
        return record

    def take_for_read(self, identifier: str) -> Optional[ListingRecord]:
        record = self._materialize(identifier)
        return record.model_copy(deep=True) if record is not None else None

    @asynccontextmanager
    async def take_for_write(self, identifier: str) -> AsyncIterator[Optional[ListingRecord]]:
        lock = self._locks.setdefault(identifier, asyncio.Lock())
        async with lock:
            original = self._materialize(identifier)
            if original is None:
                yield None
                return
            working = original.model_copy(deep=True)
            yield working
            if working.model_dump() != original.model_dump():
                self._store.save(working)
                self._remember(working.model_copy(deep=True))

    def is_locked(self, identifier: str) -> bool:
        lock = self._locks.get(identifier)
        return lock is not None and lock.locked()

    # ---- cache -------------------------------------------------------------

    def _remember(self, record: ListingRecord) -> None:
        self._cache[record.identifier] = record
        self._cache.move_to_end(record.identifier)
        while len(self._cache) > self._cache_size:
            evicted, _ = self._cache.popitem(last=False)
            log.debug("Evicted %s from the cache", evicted)

    def put_weakly(self, record: ListingRecord) -> None:
        self._remember(record.model_copy(deep=True))

    def erase(self, identifier: str) -> None:
        self._cache.pop(identifier, None)

    def cached(self, identifier: str) -> bool:
        return identifier in self._cache

    # ---- ingestion / removal -------------------------------------------------

    def insert(self, record: ListingRecord) -> None:
        self._store.save(record)
        self._remember(record.model_copy(deep=True))

    def remove(self, identifier: str) -> bool:
        self.erase(identifier)
        lock = self._locks.get(identifier)
        if lock is not None and not lock.locked():
            del self._locks[identifier]
        return self._store.remove(identifier)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._cache or self._store.get(identifier) is not None

    def __len__(self) -> int:
        return self._store.count()

    def identifiers(self) -> List[str]:
        return self._store.identifiers()

    def all_records(self) -> List[ListingRecord]:
        return self._store.all_records()

    def active_count(self) -> int:
        return self._store.active_count()

    # ---- queries -------------------------------------------------------------

    def find_all_needing_update(self, horizon: timedelta) -> List[str]:
        return self._store.needing_update(self._clock.now() - horizon)

    def find_ending_needing_update(self, horizon: timedelta) -> List[str]:
        now = self._clock.now()
        return self._store.needing_update(now - horizon, now + self._ending_window)

    def find_manual_updates(self) -> List[str]:
        return self._store.manual_updates()

    def find_expired(self, grace: timedelta) -> List[str]:
        return self._store.ended_before(self._clock.now() - grace)

    def find_snipes_due(self) -> List[str]:
        return self._store.snipes_due(self._clock.now())

    def find_snipes_missed(self) -> List[str]:
        return self._store.snipes_missed(self._clock.now())

    # ---- tombstones ------------------------------------------------------------

    def tombstone(self, identifier: str) -> None:
        self._store.tombstone(identifier)

    def is_tombstoned(self, identifier: str) -> bool:
        return self._store.is_tombstoned(identifier)

    def tombstones(self) -> List[str]:
        return self._store.tombstones()

    def clear_tombstones(self) -> int:
        return self._store.clear_tombstones()
