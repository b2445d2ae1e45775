from __future__ import annotations

import unittest

from presence.services.geofence import WorkLocationSnapshot
from presence.services.location_cache import WorkLocationCache


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _CountingLoader:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> list[WorkLocationSnapshot]:
        self.calls += 1
        return [
            WorkLocationSnapshot(
                id=self.calls,
                name=f"Site {self.calls}",
                address="",
                latitude=41.0,
                longitude=29.0,
                radius_m=100.0,
            )
        ]


class WorkLocationCacheTests(unittest.TestCase):
    def test_serves_cached_value_within_ttl(self) -> None:
        clock = _FakeClock()
        loader = _CountingLoader()
        cache = WorkLocationCache(300, clock=clock)

        first = cache.get_or_load(loader)
        clock.now += 299
        second = cache.get_or_load(loader)

        self.assertEqual(loader.calls, 1)
        self.assertEqual(first, second)

    def test_reloads_after_ttl_expires(self) -> None:
        clock = _FakeClock()
        loader = _CountingLoader()
        cache = WorkLocationCache(300, clock=clock)

        cache.get_or_load(loader)
        clock.now += 300
        reloaded = cache.get_or_load(loader)

        self.assertEqual(loader.calls, 2)
        self.assertEqual(reloaded[0].id, 2)

    def test_invalidate_forces_reload(self) -> None:
        clock = _FakeClock()
        loader = _CountingLoader()
        cache = WorkLocationCache(300, clock=clock)

        cache.get_or_load(loader)
        cache.invalidate()
        cache.get_or_load(loader)

        self.assertEqual(loader.calls, 2)

    def test_returned_list_does_not_mutate_cache(self) -> None:
        loader = _CountingLoader()
        cache = WorkLocationCache(300, clock=_FakeClock())

        cache.get_or_load(loader).clear()

        self.assertEqual(len(cache.get_or_load(loader)), 1)
        self.assertEqual(loader.calls, 1)


if __name__ == "__main__":
    unittest.main()
