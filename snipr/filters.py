from __future__ import annotations

import logging
from typing import Dict, List, Optional

from snipr.records import ListingRecord

log = logging.getLogger("snipr.filters")


class FilterIndex:
    """category -> identifiers, in the order they were added."""

    def __init__(self):
        self._groups: Dict[str, Dict[str, None]] = {}
        self._where: Dict[str, str] = {}

    def add(self, record: ListingRecord) -> None:
        if record.identifier in self._where:
            self.move(record.identifier, record.category)
            return
        self._groups.setdefault(record.category, {})[record.identifier] = None
        self._where[record.identifier] = record.category

    def delete(self, identifier: str) -> bool:
        category = self._where.pop(identifier, None)
        if category is None:
            return False
        members = self._groups[category]
        del members[identifier]
        if not members:
            del self._groups[category]
        return True

    def move(self, identifier: str, category: str) -> Optional[str]:
        """Regroup an identifier; returns the category it left, if it moved."""
        old = self._where.get(identifier)
        if old is None or old == category:
            return None
        self.delete(identifier)
        self._groups.setdefault(category, {})[identifier] = None
        self._where[identifier] = category
        log.debug("Moved %s from %s to %s", identifier, old, category)
        return old

    def categories(self) -> List[str]:
        return list(self._groups)

    def members(self, category: str) -> List[str]:
        return list(self._groups.get(category, ()))

    def category_of(self, identifier: str) -> Optional[str]:
        return self._where.get(identifier)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._where

    def __len__(self) -> int:
        return len(self._where)
