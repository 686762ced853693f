"""Environment defaults merged with database overrides behind a read-through cache."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path

from sqlmodel import Session, col, delete, select

from people_lookup.config import Settings
from people_lookup.lookup.models import BillingPolicyName, FilterDefaults
from people_lookup.lookup.pricing import PriceTable
from people_lookup.storage.alembic_runner import upgrade_head
from people_lookup.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from people_lookup.storage.sqlmodel_models import SystemConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LookupConfig:
    """Immutable configuration snapshot taken once per submission."""

    prices: PriceTable
    filter_defaults: FilterDefaults
    cache_ttl_days: int
    wave_size: int
    max_pages: int
    max_details_per_subtask: int
    billing_policy: BillingPolicyName
    provider_enabled: bool
    provider_token: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> LookupConfig:
        return cls(
            prices=PriceTable(
                search_cost=settings.pricing.search_cost,
                detail_cost=settings.pricing.detail_cost,
            ),
            filter_defaults=FilterDefaults(
                min_age=settings.filter_defaults.min_age,
                max_age=settings.filter_defaults.max_age,
                min_report_year=settings.filter_defaults.min_report_year,
            ),
            cache_ttl_days=settings.execution.cache_ttl_days,
            wave_size=settings.execution.wave_size,
            max_pages=settings.execution.max_pages,
            max_details_per_subtask=settings.execution.max_details_per_subtask,
            billing_policy=BillingPolicyName(settings.pricing.billing_policy),
            provider_enabled=settings.provider.enabled,
            provider_token=settings.provider.token,
        )


def _parse_decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as error:
        raise ValueError(f"expected a decimal number, got {raw!r}") from error
    if value < 0:
        raise ValueError("must be >= 0")
    return value


def _parse_int(minimum: int) -> Callable[[str], int]:
    def parse(raw: str) -> int:
        try:
            value = int(raw)
        except ValueError as error:
            raise ValueError(f"expected an integer, got {raw!r}") from error
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value

    return parse


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")


def _apply_search_cost(config: LookupConfig, raw: str) -> LookupConfig:
    return replace(config, prices=replace(config.prices, search_cost=_parse_decimal(raw)))


def _apply_detail_cost(config: LookupConfig, raw: str) -> LookupConfig:
    return replace(config, prices=replace(config.prices, detail_cost=_parse_decimal(raw)))


def _apply_default(name: str) -> Callable[[LookupConfig, str], LookupConfig]:
    def apply(config: LookupConfig, raw: str) -> LookupConfig:
        defaults = replace(config.filter_defaults, **{name: _parse_int(0)(raw)})
        return replace(config, filter_defaults=defaults)

    return apply


def _apply_int(name: str, minimum: int) -> Callable[[LookupConfig, str], LookupConfig]:
    def apply(config: LookupConfig, raw: str) -> LookupConfig:
        return replace(config, **{name: _parse_int(minimum)(raw)})

    return apply


def _apply_policy(config: LookupConfig, raw: str) -> LookupConfig:
    try:
        policy = BillingPolicyName(raw.strip())
    except ValueError as error:
        names = ", ".join(item.value for item in BillingPolicyName)
        raise ValueError(f"expected one of: {names}") from error
    return replace(config, billing_policy=policy)


def _apply_enabled(config: LookupConfig, raw: str) -> LookupConfig:
    return replace(config, provider_enabled=_parse_bool(raw))


def _apply_token(config: LookupConfig, raw: str) -> LookupConfig:
    return replace(config, provider_token=raw.strip() or None)


CONFIG_KEYS: dict[str, Callable[[LookupConfig, str], LookupConfig]] = {
    "search_cost": _apply_search_cost,
    "detail_cost": _apply_detail_cost,
    "default_min_age": _apply_default("min_age"),
    "default_max_age": _apply_default("max_age"),
    "default_min_report_year": _apply_default("min_report_year"),
    "cache_ttl_days": _apply_int("cache_ttl_days", 1),
    "wave_size": _apply_int("wave_size", 1),
    "max_pages": _apply_int("max_pages", 1),
    "max_details_per_subtask": _apply_int("max_details_per_subtask", 0),
    "billing_policy": _apply_policy,
    "enabled": _apply_enabled,
    "provider_token": _apply_token,
}


def apply_overrides(base: LookupConfig, overrides: dict[str, str]) -> LookupConfig:
    """Fold stored overrides into ``base``; unknown or invalid keys raise ValueError."""

    config = base
    for key in sorted(overrides):
        apply = CONFIG_KEYS.get(key)
        if apply is None:
            raise ValueError(f"Unknown config key {key!r}.")
        try:
            config = apply(config, overrides[key])
        except ValueError as error:
            raise ValueError(f"Invalid value for config key {key!r}: {error}") from error
    if config.filter_defaults.min_age > config.filter_defaults.max_age:
        raise ValueError("default_min_age must be <= default_max_age.")
    return config


class SystemConfigRepository:
    """Key/value overrides stored in ``system_configs``."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def get_all(self) -> dict[str, str]:
        with Session(self.engine) as session:
            rows = session.exec(select(SystemConfig)).all()
        return {row.key: row.value for row in rows}

    def set(self, key: str, value: str) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(SystemConfig, key)
            if row is None:
                row = SystemConfig(key=key, value=value, updated_at=now)
            else:
                row.value = value
                row.updated_at = now
            session.add(row)
            session.commit()

    def delete(self, key: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(delete(SystemConfig).where(col(SystemConfig.key) == key))
            session.commit()
            return bool(result.rowcount)


class RuntimeConfigProvider:
    """Read-through cache of the merged configuration.

    A snapshot is reused for ``ttl_seconds``; writes through this provider
    invalidate it immediately. Writes made by other processes become visible
    once the TTL expires.
    """

    def __init__(
        self,
        settings: Settings,
        store: SystemConfigRepository,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base = LookupConfig.from_settings(settings)
        self._store = store
        self._ttl_seconds = settings.config_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: LookupConfig | None = None
        self._loaded_at = 0.0

    def snapshot(self) -> LookupConfig:
        with self._lock:
            now = self._clock()
            if self._cached is not None and now - self._loaded_at < self._ttl_seconds:
                return self._cached
            self._cached = apply_overrides(self._base, self._store.get_all())
            self._loaded_at = now
            return self._cached

    def overrides(self) -> dict[str, str]:
        return self._store.get_all()

    def set_value(self, key: str, value: str) -> LookupConfig:
        """Validate and persist one override; the next snapshot reflects it."""

        merged = apply_overrides(self._base, {**self._store.get_all(), key: value})
        self._store.set(key, value)
        self.invalidate()
        logger.info("Runtime config %s updated", key)
        return merged

    def unset_value(self, key: str) -> bool:
        removed = self._store.delete(key)
        self.invalidate()
        return removed

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
