from __future__ import annotations

from collections.abc import Callable
import threading
import time

from presence.services.geofence import WorkLocationSnapshot


class WorkLocationCache:
    """Single-entry TTL cache for the active work location list.

    Owned by whoever creates it (the application keeps one on ``app.state``);
    snapshots are immutable so they can outlive the session that loaded them.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._value: tuple[WorkLocationSnapshot, ...] | None = None
        self._expires_at = 0.0

    def get_or_load(
        self,
        loader: Callable[[], list[WorkLocationSnapshot]],
    ) -> list[WorkLocationSnapshot]:
        with self._lock:
            now = self._clock()
            if self._value is not None and now < self._expires_at:
                return list(self._value)

            loaded = tuple(loader())
            self._value = loaded
            self._expires_at = now + self._ttl_seconds
            return list(loaded)

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._expires_at = 0.0
