from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from snipr.bus import CategoryUpdate, MessageBus, Redraw, StatusText, UpdateNotice
from snipr.clock import Clock, PauseManager
from snipr.core import AuctionFinished, UpdateDriver
from snipr.corral import EntryCorral
from snipr.filters import FilterIndex
from snipr.records import ListingState
from snipr.settings import PollingCfg

log = logging.getLogger("snipr.pipeline")


class UpdatePipeline:
    """Fetch, diff, commit and announce one listing at a time."""

    def __init__(
        self,
        corral: EntryCorral,
        index: FilterIndex,
        bus: MessageBus,
        clock: Clock,
        driver: UpdateDriver,
        pause: PauseManager,
        polling: PollingCfg,
    ):
        self._corral = corral
        self._index = index
        self._bus = bus
        self._clock = clock
        self._driver = driver
        self._pause = pause
        self._slow = timedelta(minutes=polling.slow_minutes)
        self._fast = timedelta(minutes=polling.fast_minutes)
        self._ending_window = timedelta(minutes=polling.ending_window_minutes)

    async def run(self, identifier: str) -> bool:
        """Update one listing; returns True if the driver was called."""
        record = self._corral.take_for_read(identifier)
        if record is None:
            return False
        forced = record.update_required
        # networking may have gone down since the bucket was computed
        if self._pause.is_paused() and not forced:
            return False
        if not record.is_active and not forced:
            return False

        category = record.category
        self._bus.emit(CategoryUpdate(category, "start", identifier))
        try:
            await self._do_update(identifier)
        finally:
            self._bus.emit(CategoryUpdate(category, "stop", identifier))

        if forced:
            self._bus.emit(Redraw(self._index.category_of(identifier) or category))
        return True

    async def _do_update(self, identifier: str) -> None:
        record = self._corral.take_for_read(identifier)
        if record is None:
            return
        title = record.title_and_comment
        self._bus.emit(StatusText(f"Updating {title}"))
        before = self._driver.serialize(record)

        try:
            async with self._corral.take_for_write(identifier) as working:
                if working is None:
                    return
                try:
                    await self._driver.refresh(working)
                except AuctionFinished:
                    log.info("%s has finished", identifier)
                    working.state = ListingState.COMPLETED
                now = self._clock.now()
                working.last_checked = now
                working.update_required = False
                working.schedule_next(now, self._slow, self._fast, self._ending_window)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("Failed to update %s", identifier)
            self._bus.emit(StatusText(f"ERROR Failed to update {title}: {exc}"))
            async with self._corral.take_for_write(identifier) as working:
                if working is not None:
                    working.update_required = True
            return

        updated = self._corral.take_for_read(identifier)
        if updated is None:
            return
        after = self._driver.serialize(updated)
        changed = before != after

        self._bus.emit(UpdateNotice(identifier, changed))
        if changed:
            self._bus.emit(Redraw(updated.category))
            left = self._index.move(identifier, updated.category)
            if left is not None:
                self._bus.emit(Redraw(left))

        # drop the cached copy; the stored one is now authoritative
        async with self._corral.take_for_write(identifier):
            self._corral.erase(identifier)
        self._bus.emit(Redraw(identifier))
        self._bus.emit(StatusText(f"Done updating {updated.title_and_comment}"))
