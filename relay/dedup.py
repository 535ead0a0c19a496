"""First-occurrence markers for system events, shared through storage."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable

from relay.storage import StorageDirectory

LOGGER = logging.getLogger(__name__)

MARKER_DIR = ".dedup"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class DedupMarkers:
    """Per-day, per-(account, chat) markers created with exclusive create.

    Any number of ingestion processes sharing the storage directory agree on
    which event was first, because only one of them can create the marker.
    """

    def __init__(
        self,
        storage: StorageDirectory,
        enabled: bool = True,
        retention_days: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage
        self._enabled = enabled
        self._retention_days = max(1, retention_days)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def enabled(self) -> bool:
        return self._enabled

    def first_seen(self, account: str, chat_id: str) -> bool:
        """Return True exactly once per (account, chat_id) and UTC day.

        Always True when dedup is disabled or the marker cannot be written:
        a duplicate reply is preferred over a lost one.
        """
        if not self._enabled:
            return True
        day = f"{self._clock():%Y%m%d}"
        name = f"{MARKER_DIR}/{day}/{_safe(account)}__{_safe(chat_id)}"
        try:
            created = self._storage.create_exclusive(name, self._clock().isoformat())
        except OSError:
            LOGGER.warning("Could not write dedup marker %s", name, exc_info=True)
            return True
        if not created:
            LOGGER.info("Skipping repeated system event for %s/%s", account, chat_id)
        return created

    def prune(self) -> list[str]:
        """Remove day directories older than the retention window."""

        oldest_kept = f"{self._clock() - timedelta(days=self._retention_days - 1):%Y%m%d}"
        removed: list[str] = []
        for day in self._storage.list_dirs(MARKER_DIR):
            if day >= oldest_kept:
                continue
            try:
                self._storage.remove_dir(f"{MARKER_DIR}/{day}")
            except OSError:
                LOGGER.warning("Could not prune dedup markers for %s", day, exc_info=True)
                continue
            removed.append(day)
        return removed


def _safe(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", str(value))
