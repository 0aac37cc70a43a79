"""Readiness tracking for the HTTP health endpoints."""

from __future__ import annotations

import threading

__all__ = ["HealthState"]


class HealthState:
    """Thread-safe readiness flag; starts as not ready."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ready = False

    @property
    def ready(self) -> bool:
        """Whether the service accepts traffic."""
        with self._lock:
            return self._ready

    @ready.setter
    def ready(self, value: bool) -> None:
        with self._lock:
            self._ready = bool(value)