"""Persistent detail-record cache keyed by provider detail link."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from people_lookup.storage.alembic_runner import upgrade_head
from people_lookup.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from people_lookup.storage.sqlmodel_models import DetailCacheEntry

logger = logging.getLogger(__name__)

_GET_CHUNK_SIZE = 500


@dataclass(slots=True, frozen=True)
class CacheWrite:
    key: str
    payload: dict[str, Any]
    ttl_days: int


@dataclass(slots=True)
class CacheStats:
    total: int
    live: int


class DetailCacheStore:
    """Global TTL cache shared by every task.

    Writes are best effort: the first writer of a live key wins and later
    duplicates are dropped. Expired keys are overwritten by a fresh write.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def get_many(self, keys: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Return payloads for keys that exist and have not expired."""

        unique_keys = list(dict.fromkeys(keys))
        if not unique_keys:
            return {}
        now = to_db_datetime(self._clock())
        found: dict[str, dict[str, Any]] = {}
        with Session(self.engine) as session:
            for offset in range(0, len(unique_keys), _GET_CHUNK_SIZE):
                chunk = unique_keys[offset : offset + _GET_CHUNK_SIZE]
                rows = session.exec(
                    select(DetailCacheEntry).where(
                        col(DetailCacheEntry.detail_link).in_(chunk),
                        col(DetailCacheEntry.expires_at) > now,
                    ),
                ).all()
                for row in rows:
                    found[row.detail_link] = json.loads(row.payload_json)
        return found

    def put_many(self, entries: Sequence[CacheWrite]) -> int:
        """Insert entries one transaction each; return how many were written."""

        written = 0
        for entry in entries:
            if self._put_one(entry):
                written += 1
        return written

    def _put_one(self, entry: CacheWrite) -> bool:
        now = self._clock()
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            session.exec(
                delete(DetailCacheEntry).where(
                    col(DetailCacheEntry.detail_link) == entry.key,
                    col(DetailCacheEntry.expires_at) <= db_now,
                ),
            )
            session.add(
                DetailCacheEntry(
                    detail_link=entry.key,
                    payload_json=json.dumps(entry.payload, ensure_ascii=False, sort_keys=True),
                    created_at=db_now,
                    expires_at=to_db_datetime(now + timedelta(days=entry.ttl_days)),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Cache entry already present for %s; keeping first write", entry.key)
                return False
        return True

    def purge_expired(self) -> int:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                delete(DetailCacheEntry).where(col(DetailCacheEntry.expires_at) <= now),
            )
            session.commit()
            return int(result.rowcount or 0)

    def stats(self) -> CacheStats:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(DetailCacheEntry)).one()
            live = session.exec(
                select(func.count())
                .select_from(DetailCacheEntry)
                .where(col(DetailCacheEntry.expires_at) > now),
            ).one()
        return CacheStats(total=int(total), live=int(live))
