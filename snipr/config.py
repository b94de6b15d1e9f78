from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from snipr.db import ListingStore

log = logging.getLogger("snipr.config")

Listener = Callable[[str], None]


class RuntimeConfig:
    """String-keyed, string-valued settings that the engine rewrites at runtime.

    Readers grab whatever dict is current and never take the lock; writers
    copy, modify and swap the dict under the lock, then write the entry
    through to the store (if any) and notify listeners.
    """

    def __init__(self, initial: Optional[dict[str, str]] = None,
                 store: Optional[ListingStore] = None):
        values = {k: str(v) for k, v in (initial or {}).items()}
        if store is not None:
            values.update(store.config_items())
        self._values = values
        self._store = store
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def query(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value) -> None:
        value = str(value)
        with self._lock:
            if self._values.get(key) == value:
                return
            values = dict(self._values)
            values[key] = value
            self._values = values
            if self._store is not None:
                self._store.set_config(key, value)
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                log.exception("Config listener %r failed for %s", listener, key)

    def register_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)
