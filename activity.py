"""Append-only activity log shown to officials."""

import logging
from datetime import datetime
from typing import Callable, List

from database import Store
from schemas import ActivityEntry, utcnow

log = logging.getLogger("siren.activity")


class ActivityLog:
    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def record(self, type: str, action: str, user: str, details: str) -> ActivityEntry:
        entry = ActivityEntry(
            type=type, action=action, user=user, details=details, timestamp=self.clock()
        )
        self.store.insert("activity", entry.to_document())
        log.debug("%s %s by %s: %s", type, action, user, details)
        return entry

    def recent(self, limit: int = 50) -> List[ActivityEntry]:
        entries = [ActivityEntry.model_validate(d) for d in self.store.find("activity")]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[: max(limit, 0)]
