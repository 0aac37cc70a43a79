"""Rolling leaderboards computed from the buffered ledger epochs."""

from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass

from .logs import log_event
from .metrics import Registry
from .store import ZoneStore

__all__ = [
    "WINDOW_24H",
    "WINDOW_7D",
    "GLOBAL_SCOPE",
    "WindowSpec",
    "Entry",
    "Leaderboard",
    "Manager",
    "default_windows",
    "resolve_windows",
]

WINDOW_24H = "24h"
WINDOW_7D = "7d"
GLOBAL_SCOPE = "global"
DEFAULT_REFRESH_INTERVAL = 60.0

_UTC = dt.timezone.utc

Logger = logging.Logger | logging.LoggerAdapter


@dataclass(frozen=True)
class WindowSpec:
    """A window name as used over HTTP and the rolling span it covers."""

    name: str
    duration: dt.timedelta = dt.timedelta(0)


_REGISTRY = {
    WINDOW_24H: WindowSpec(WINDOW_24H, dt.timedelta(hours=24)),
    WINDOW_7D: WindowSpec(WINDOW_7D, dt.timedelta(days=7)),
}
_DEFAULT_WINDOWS = (_REGISTRY[WINDOW_24H], _REGISTRY[WINDOW_7D])


@dataclass(frozen=True)
class Entry:
    """One ranked zone of a leaderboard."""

    rank: int
    zone_id: str
    energy_kwh: float


@dataclass(frozen=True)
class Leaderboard:
    """A ranked snapshot for one window."""

    generated_at: dt.datetime | None = None
    scope: str = GLOBAL_SCOPE
    window: str = ""
    entries: tuple[Entry, ...] = ()


def default_windows() -> list[WindowSpec]:
    """The canonical 24h and 7d windows."""
    return list(_DEFAULT_WINDOWS)


def resolve_windows(raw: Iterable[str] | None) -> list[WindowSpec]:
    """Map window names to supported windows, keeping order and dropping unknown ones.

    Falls back to the default windows when nothing is left.
    """
    resolved: list[WindowSpec] = []
    for entry in raw or ():
        spec = _REGISTRY.get(entry.strip().lower())
        if spec is not None and spec not in resolved:
            resolved.append(spec)
    return resolved or default_windows()


def _null_logger() -> logging.Logger:
    logger = logging.Logger("gamification.score.null")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def _bind(logger: Logger, **attrs: object) -> logging.LoggerAdapter:
    if isinstance(logger, logging.LoggerAdapter):
        merged = {**(logger.extra or {}).get("attrs", {}), **attrs}
        return logging.LoggerAdapter(logger.logger, {"attrs": merged})
    return logging.LoggerAdapter(logger, {"attrs": attrs})


def _as_utc(moment: dt.datetime) -> dt.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=_UTC)
    return moment.astimezone(_UTC)


class Manager:
    """Keeps one leaderboard per window, recomputed from a zone store; thread-safe."""

    def __init__(
        self,
        store: ZoneStore | None,
        logger: Logger | None = None,
        windows: Iterable[WindowSpec] | None = None,
        metrics: Registry | None = None,
    ) -> None:
        if store is None:
            raise ValueError("store must not be nil")
        self._store = store
        self._windows = tuple(resolve_windows(window.name for window in windows or ()))
        self._log = _bind(logger if logger is not None else _null_logger(), component="score_manager")
        self._metrics = metrics if metrics is not None else Registry()
        self._lock = threading.Lock()
        self._boards: dict[str, Leaderboard] = {}
        self._last_stamp: dt.datetime | None = None
        self.refresh()

    @property
    def windows(self) -> list[WindowSpec]:
        """The configured aggregation windows."""
        return list(self._windows)

    @property
    def last_generated_at(self) -> dt.datetime | None:
        """When the leaderboards were last recomputed."""
        with self._lock:
            return self._last_stamp

    def refresh(self, at: dt.datetime | None = None) -> None:
        """Recompute every window's leaderboard as of the given instant (default now)."""
        now = _as_utc(at) if at is not None else dt.datetime.now(_UTC)
        started = time.perf_counter()

        zones, order = self._store.snapshot_all()
        boards: dict[str, Leaderboard] = {}
        total_entries = 0

        for window in self._windows:
            cutoff = now - window.duration
            totals: list[tuple[str, float]] = []
            for zone_id in order:
                total = 0.0
                in_window = False
                for epoch in zones.get(zone_id, ()):
                    if epoch.matched_at < cutoff or epoch.matched_at > now:
                        continue
                    total += epoch.energy_kwh
                    in_window = True
                if in_window:
                    totals.append((zone_id, total))

            ranked = sorted(totals, key=lambda item: item[1])
            entries = tuple(
                Entry(rank=rank, zone_id=zone_id, energy_kwh=energy)
                for rank, (zone_id, energy) in enumerate(ranked, start=1)
            )
            boards[window.name] = Leaderboard(
                generated_at=now,
                scope=GLOBAL_SCOPE,
                window=window.name,
                entries=entries,
            )
            total_entries += len(entries)
            log_event(
                self._log,
                logging.INFO,
                "score_window_refreshed",
                window=window.name,
                entries=len(entries),
                generated_at=now,
            )

        with self._lock:
            self._boards = boards
            self._last_stamp = now

        elapsed = time.perf_counter() - started
        self._metrics.observe_score_refresh(elapsed)
        log_event(
            self._log,
            logging.INFO,
            "score_refresh_complete",
            windows=len(self._windows),
            total_entries=total_entries,
            zones_tracked=len(order),
            duration=f"{elapsed:.6f}s",
            generated_at=now,
        )

    def snapshot(self, window: str) -> Leaderboard | None:
        """The latest leaderboard for a window name, or None if it is not configured."""
        with self._lock:
            return self._boards.get(window.strip().lower())

    def run(self, stop_event: threading.Event, interval: float = DEFAULT_REFRESH_INTERVAL) -> None:
        """Refresh now and then every interval seconds until the stop event is set."""
        if interval <= 0:
            interval = DEFAULT_REFRESH_INTERVAL
        log_event(self._log, logging.INFO, "score_refresh_loop_started", interval=f"{interval}s")
        self.refresh()
        while not stop_event.wait(interval):
            self.refresh()
        log_event(self._log, logging.INFO, "score_refresh_loop_stopped")