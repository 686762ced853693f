from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure

from people_lookup.lookup.cache import CacheWrite, DetailCacheStore

pytestmark = [
    allure.epic("Search Tasks"),
    allure.feature("Detail Cache"),
]


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _store(db_path: Path, clock: _Clock | None = None) -> DetailCacheStore:
    store = DetailCacheStore(db_path, clock=clock) if clock else DetailCacheStore(db_path)
    store.init_schema()
    return store


def test_get_many_returns_only_live_entries(db_path: Path) -> None:
    clock = _Clock(datetime(2026, 1, 1, tzinfo=UTC))
    store = _store(db_path, clock)
    try:
        assert store.put_many(
            [
                CacheWrite("link-1", {"detail_link": "link-1", "name": "Jane"}, ttl_days=180),
                CacheWrite("link-2", {"detail_link": "link-2", "name": "John"}, ttl_days=1),
            ],
        ) == 2

        clock.now += timedelta(days=2)
        found = store.get_many(["link-1", "link-2", "link-3", "link-1"])

        assert found == {"link-1": {"detail_link": "link-1", "name": "Jane"}}
        assert store.get_many([]) == {}
        stats = store.stats()
        assert (stats.total, stats.live) == (2, 1)
    finally:
        store.close()


def test_first_write_of_live_key_wins(db_path: Path) -> None:
    store = _store(db_path)
    try:
        assert store.put_many([CacheWrite("link-1", {"name": "first"}, ttl_days=30)]) == 1
        assert store.put_many([CacheWrite("link-1", {"name": "second"}, ttl_days=30)]) == 0

        assert store.get_many(["link-1"]) == {"link-1": {"name": "first"}}
    finally:
        store.close()


def test_expired_key_is_overwritten_and_purged(db_path: Path) -> None:
    clock = _Clock(datetime(2026, 1, 1, tzinfo=UTC))
    store = _store(db_path, clock)
    try:
        store.put_many(
            [
                CacheWrite("link-1", {"name": "old"}, ttl_days=1),
                CacheWrite("link-2", {"name": "gone"}, ttl_days=1),
            ],
        )
        clock.now += timedelta(days=3)

        assert store.put_many([CacheWrite("link-1", {"name": "new"}, ttl_days=1)]) == 1
        assert store.get_many(["link-1"]) == {"link-1": {"name": "new"}}
        assert store.purge_expired() == 1
        assert store.stats().total == 1
    finally:
        store.close()


def test_concurrent_writers_store_each_key_once(db_path: Path) -> None:
    store = _store(db_path)
    start = threading.Event()

    def _write(writer: int) -> int:
        start.wait(timeout=5)
        return store.put_many(
            [CacheWrite(f"link-{index}", {"writer": writer}, ttl_days=30) for index in range(5)],
        )

    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(_write, writer) for writer in range(4)]
            start.set()
            written = sum(future.result(timeout=30) for future in futures)

        assert written == 5
        assert store.stats().total == 5
        assert len(store.get_many(f"link-{index}" for index in range(5))) == 5
    finally:
        store.close()
