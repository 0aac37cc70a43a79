"""Bounded in-memory buffers of finalized epochs, grouped by zone."""

from __future__ import annotations

import datetime as dt
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

__all__ = ["EpochEnergy", "ZoneStore", "LogSampler", "DEFAULT_MAX_EPOCHS_PER_ZONE"]

DEFAULT_MAX_EPOCHS_PER_ZONE = 1000
DEFAULT_SAMPLER_WINDOW = 60.0


@dataclass(frozen=True)
class EpochEnergy:
    """The parts of a finalized epoch that the aggregations need."""

    zone_id: str
    matched_at: dt.datetime
    energy_kwh: float = 0.0
    epoch_index: int | None = None


class ZoneStore:
    """Append-only per-zone buffers with a fixed capacity; thread-safe.

    When a zone's buffer is full, appending evicts its oldest epoch.
    Zones are remembered in the order they were first seen.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_EPOCHS_PER_ZONE) -> None:
        self._max_size = max_size if max_size > 0 else DEFAULT_MAX_EPOCHS_PER_ZONE
        self._lock = threading.Lock()
        self._zones: dict[str, deque[EpochEnergy]] = {}

    @property
    def max_size(self) -> int:
        """Number of epochs kept per zone."""
        return self._max_size

    def append(self, zone: str, record: EpochEnergy) -> tuple[int, EpochEnergy | None]:
        """Buffer an epoch for a zone.

        Returns the zone's buffer depth and the evicted epoch, if any.
        An empty zone name is ignored and yields (0, None).
        """
        if not zone:
            return 0, None
        with self._lock:
            buffer = self._zones.setdefault(zone, deque())
            evicted = buffer.popleft() if len(buffer) >= self._max_size else None
            buffer.append(record)
            return len(buffer), evicted

    def snapshot(self, zone: str) -> list[EpochEnergy]:
        """Return a copy of the epochs buffered for a zone, oldest first."""
        with self._lock:
            return list(self._zones.get(zone, ()))

    def snapshot_all(self) -> tuple[dict[str, list[EpochEnergy]], list[str]]:
        """Return copies of every zone's epochs and the first-seen zone order."""
        with self._lock:
            zones = {zone: list(epochs) for zone, epochs in self._zones.items()}
        return zones, list(zones)


class LogSampler:
    """Lets a log line through at most once per window for each key."""

    def __init__(
        self,
        window: float = DEFAULT_SAMPLER_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window if window > 0 else DEFAULT_SAMPLER_WINDOW
        self._clock = clock
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def allow(self, key: str) -> bool:
        """Whether a line for this key may be emitted now."""
        now = self._clock()
        with self._lock:
            previous = self._last.get(key)
            if previous is not None and now - previous < self._window:
                return False
            self._last[key] = now
            return True