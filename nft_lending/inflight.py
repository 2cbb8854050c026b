"""Per-loan guard refusing concurrent mutating operations."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import Busy

LOGGER = logging.getLogger("nft-lending.inflight")


@dataclass
class InFlightEntry:
    key: str
    kind: str
    acquired_at: float
    handle_id: Optional[str] = None


class InFlightGuard:
    """At most one outstanding mutating operation per key.

    Entries expire after ``ttl`` seconds so a finality wait lost to a restart
    or a crashed tracker cannot hold a loan forever.
    """

    def __init__(self, ttl: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, InFlightEntry] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now - entry.acquired_at > self.ttl]
        for key in expired:
            entry = self._entries.pop(key)
            LOGGER.warning("In-flight %s on %s expired after %.0fs (handle %s)", entry.kind, key, self.ttl, entry.handle_id)

    def acquire(self, key: str, kind: str) -> InFlightEntry:
        with self._lock:
            now = self._clock()
            self._purge(now)
            current = self._entries.get(key)
            if current is not None:
                raise Busy(
                    f"another {current.kind} is in flight for {key}",
                    {"key": key, "inFlight": current.kind, "handle": current.handle_id},
                )
            entry = InFlightEntry(key=key, kind=kind, acquired_at=now)
            self._entries[key] = entry
            return entry

    def attach(self, entry: InFlightEntry, handle_id: str) -> None:
        with self._lock:
            entry.handle_id = handle_id

    def release(self, entry: InFlightEntry) -> bool:
        with self._lock:
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]
                return True
            return False

    def get(self, key: str) -> Optional[InFlightEntry]:
        with self._lock:
            self._purge(self._clock())
            return self._entries.get(key)

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._entries)


__all__ = ["InFlightEntry", "InFlightGuard"]
