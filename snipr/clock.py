import asyncio
import inspect
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

log = logging.getLogger("snipr.clock")

ALMOST_A_SECOND = 990


class Clock:
    """All engine timestamps come from here, so tests can swap it out."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class PauseManager:
    """Global "keep off the network" switch, optionally self-expiring."""

    def __init__(self, clock: Clock):
        self._clock = clock
        self._paused = False
        self._until: Optional[float] = None

    def pause(self, seconds: Optional[float] = None) -> None:
        self._paused = True
        self._until = self._clock.monotonic() + seconds if seconds else None
        log.info("Updates paused%s", f" for {seconds:.0f}s" if seconds else "")

    def resume(self) -> None:
        if self._paused:
            log.info("Updates resumed")
        self._paused = False
        self._until = None

    def is_paused(self) -> bool:
        if self._paused and self._until is not None and self._clock.monotonic() >= self._until:
            self.resume()
        return self._paused


class Ticker:
    """Calls ``on_tick`` every ``interval_ms`` until cancelled.

    Backed by a single APScheduler interval job, so a slow tick is never
    overlapped by the next one. While paused the job keeps firing but the
    callback is skipped.
    """

    def __init__(
        self,
        on_tick: Callable[[], Any],
        interval_ms: int = ALMOST_A_SECOND,
        name: str = "updates",
    ):
        self._on_tick = on_tick
        self._interval = interval_ms / 1000
        self._name = name
        self._paused = False
        self._scheduler: Optional[AsyncIOScheduler] = None

    def pause(self) -> None:
        self._paused = True

    def unpause(self) -> None:
        self._paused = False

    def is_paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._wake,
            "interval",
            seconds=self._interval,
            id=self._name,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=30,
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info("Ticker %s started (every %d ms)", self._name, self._interval * 1000)

    def cancel(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            log.info("Ticker %s stopped", self._name)
        self._scheduler = None

    async def _wake(self) -> None:
        if self._paused:
            return
        try:
            result = self._on_tick()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            log.debug("Tick on %s cancelled", self._name)
            raise
        except Exception:
            log.exception("Exception during the tick of %r", self._on_tick)
