# snipr/bus.py
"""
Named message queues with one handler and one delivery worker per queue.

Publishing never blocks: queues are unbounded ``asyncio.Queue`` objects
created on first reference. Each subscribed queue gets a worker task that
hands messages to the current handler in FIFO order, so a handler never
runs re-entrantly. A failing handler is logged and the worker moves on.

The engine publishes typed events (``StatusText``, ``Redraw`` ...). Each
knows its queue name and renders the plain-text message the UI side
expects via ``str()``; ``subscribe_text`` is the adapter for handlers that
only want that text.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

log = logging.getLogger("snipr.bus")

Handler = Callable[[Any], Any]

SWING = "swing"
REDRAW = "redraw"
MY = "my"
SPLASH = "splash"


@dataclass(frozen=True)
class StatusText:
    text: str
    queue = SWING

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Redraw:
    target: str
    queue = REDRAW

    def __str__(self) -> str:
        return self.target


@dataclass(frozen=True)
class UpdateNotice:
    identifier: str
    changed: bool
    queue = MY

    def __str__(self) -> str:
        return f"UPDATE {self.identifier},{'true' if self.changed else 'false'}"


@dataclass(frozen=True)
class SplashProgress:
    command: str  # WIDTH or SET
    value: int
    queue = SPLASH

    def __str__(self) -> str:
        return f"{self.command} {self.value}"


@dataclass(frozen=True)
class CategoryUpdate:
    category: str
    action: str  # start or stop
    identifier: str

    @property
    def queue(self) -> str:
        return f"update.{self.category}"

    def __str__(self) -> str:
        return f"{self.action} {self.identifier}"


class MessageBus:
    def __init__(self):
        self._queues: Dict[str, asyncio.Queue] = {}
        self._handlers: Dict[str, Handler] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def queue(self, name: str) -> asyncio.Queue:
        q = self._queues.get(name)
        if q is None:
            q = self._queues[name] = asyncio.Queue()
        return q

    def publish(self, name: str, message: Any) -> None:
        self.queue(name).put_nowait(message)
        self._ensure_worker(name)

    def emit(self, event: Any) -> None:
        self.publish(event.queue, event)

    def subscribe(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            log.debug("Replacing handler for queue %s", name)
        self._handlers[name] = handler
        self.queue(name)
        self._ensure_worker(name)

    def subscribe_text(self, name: str, handler: Callable[[str], Any]) -> None:
        self.subscribe(name, lambda message: handler(str(message)))

    def pending(self, name: str) -> int:
        q = self._queues.get(name)
        return q.qsize() if q is not None else 0

    def _ensure_worker(self, name: str) -> None:
        if name not in self._handlers:
            return
        worker = self._workers.get(name)
        if worker is not None and not worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # started by the first publish/subscribe made inside the loop
            return
        self._workers[name] = loop.create_task(
            self._deliver(name, self._queues[name]), name=f"bus:{name}"
        )

    async def _deliver(self, name: str, q: asyncio.Queue) -> None:
        while True:
            message = await q.get()
            try:
                handler: Optional[Handler] = self._handlers.get(name)
                if handler is not None:
                    result = handler(message)
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                log.exception("Handler for queue %s failed on %r", name, message)
            finally:
                q.task_done()

    async def join(self) -> None:
        """Wait until every subscribed queue has been delivered."""
        for name in list(self._handlers):
            self._ensure_worker(name)
            await self._queues[name].join()

    async def close(self) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        for worker in workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
