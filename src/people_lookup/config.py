"""Runtime configuration for the lookup task engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

BILLING_POLICIES = ("postpaid_deduct", "prepaid_freeze_settle")


@dataclass(slots=True)
class PricingSettings:
    """Per-call prices in credits."""

    search_cost: Decimal = Decimal("0.3")
    detail_cost: Decimal = Decimal("0.3")
    billing_policy: str = "prepaid_freeze_settle"


@dataclass(slots=True)
class FilterDefaultSettings:
    """Product defaults for filters left unset at submission."""

    min_age: int = 50
    max_age: int = 79
    min_report_year: int = 2025


@dataclass(slots=True)
class ExecutionSettings:
    """Fan-out and cache settings."""

    wave_size: int = 4
    max_pages: int = 10
    max_details_per_subtask: int = 50
    cache_ttl_days: int = 180
    executor_workers: int = 4


@dataclass(slots=True)
class StoreSettings:
    """Task store write policy."""

    sqlite_busy_timeout_ms: int = 5_000
    log_cap: int = 100
    max_retries: int = 3
    retry_backoff_seconds: float = 0.2


@dataclass(slots=True)
class ProviderSettings:
    """Lookup provider settings."""

    enabled: bool = True
    token: str | None = None
    fixture_path: Path | None = None


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".people_lookup.db")
    pricing: PricingSettings = field(default_factory=PricingSettings)
    filter_defaults: FilterDefaultSettings = field(default_factory=FilterDefaultSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)
    config_cache_ttl_seconds: float = 300.0

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        fixture = os.getenv("PEOPLE_LOOKUP_PROVIDER_FIXTURE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("PEOPLE_LOOKUP_DB_PATH", ".people_lookup.db")),
            pricing=PricingSettings(
                search_cost=_env_decimal("PEOPLE_LOOKUP_SEARCH_COST", "0.3"),
                detail_cost=_env_decimal("PEOPLE_LOOKUP_DETAIL_COST", "0.3"),
                billing_policy=os.getenv("PEOPLE_LOOKUP_BILLING_POLICY", "prepaid_freeze_settle"),
            ),
            filter_defaults=FilterDefaultSettings(
                min_age=_env_int("PEOPLE_LOOKUP_DEFAULT_MIN_AGE", "50"),
                max_age=_env_int("PEOPLE_LOOKUP_DEFAULT_MAX_AGE", "79"),
                min_report_year=_env_int("PEOPLE_LOOKUP_DEFAULT_MIN_REPORT_YEAR", "2025"),
            ),
            execution=ExecutionSettings(
                wave_size=_env_int("PEOPLE_LOOKUP_WAVE_SIZE", "4"),
                max_pages=_env_int("PEOPLE_LOOKUP_MAX_PAGES", "10"),
                max_details_per_subtask=_env_int("PEOPLE_LOOKUP_MAX_DETAILS_PER_SUBTASK", "50"),
                cache_ttl_days=_env_int("PEOPLE_LOOKUP_CACHE_TTL_DAYS", "180"),
                executor_workers=_env_int("PEOPLE_LOOKUP_EXECUTOR_WORKERS", "4"),
            ),
            store=StoreSettings(
                sqlite_busy_timeout_ms=_env_int("PEOPLE_LOOKUP_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                log_cap=_env_int("PEOPLE_LOOKUP_LOG_CAP", "100"),
                max_retries=_env_int("PEOPLE_LOOKUP_STORE_MAX_RETRIES", "3"),
                retry_backoff_seconds=_env_float(
                    "PEOPLE_LOOKUP_STORE_RETRY_BACKOFF_SECONDS",
                    "0.2",
                ),
            ),
            provider=ProviderSettings(
                enabled=_env_bool("PEOPLE_LOOKUP_ENABLED", default=True),
                token=os.getenv("PEOPLE_LOOKUP_PROVIDER_TOKEN") or None,
                fixture_path=Path(fixture) if fixture else None,
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("PEOPLE_LOOKUP_USER_ID", "default_user"),
            ),
            config_cache_ttl_seconds=_env_float("PEOPLE_LOOKUP_CONFIG_CACHE_TTL_SECONDS", "300"),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.pricing.search_cost < 0:
            raise ValueError("PEOPLE_LOOKUP_SEARCH_COST must be >= 0.")
        if self.pricing.detail_cost < 0:
            raise ValueError("PEOPLE_LOOKUP_DETAIL_COST must be >= 0.")
        if self.pricing.billing_policy not in BILLING_POLICIES:
            raise ValueError(
                "PEOPLE_LOOKUP_BILLING_POLICY must be one of: " + ", ".join(BILLING_POLICIES),
            )
        if self.filter_defaults.min_age < 0:
            raise ValueError("PEOPLE_LOOKUP_DEFAULT_MIN_AGE must be >= 0.")
        if self.filter_defaults.max_age < self.filter_defaults.min_age:
            raise ValueError(
                "PEOPLE_LOOKUP_DEFAULT_MAX_AGE must be >= PEOPLE_LOOKUP_DEFAULT_MIN_AGE.",
            )
        for name, value in (
            ("PEOPLE_LOOKUP_WAVE_SIZE", self.execution.wave_size),
            ("PEOPLE_LOOKUP_MAX_PAGES", self.execution.max_pages),
            ("PEOPLE_LOOKUP_CACHE_TTL_DAYS", self.execution.cache_ttl_days),
            ("PEOPLE_LOOKUP_EXECUTOR_WORKERS", self.execution.executor_workers),
            ("PEOPLE_LOOKUP_STORE_MAX_RETRIES", self.store.max_retries),
            ("PEOPLE_LOOKUP_SQLITE_BUSY_TIMEOUT_MS", self.store.sqlite_busy_timeout_ms),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.execution.max_details_per_subtask < 0:
            raise ValueError("PEOPLE_LOOKUP_MAX_DETAILS_PER_SUBTASK must be >= 0.")
        if self.store.log_cap < 0:
            raise ValueError("PEOPLE_LOOKUP_LOG_CAP must be >= 0.")
        if self.store.retry_backoff_seconds < 0:
            raise ValueError("PEOPLE_LOOKUP_STORE_RETRY_BACKOFF_SECONDS must be >= 0.")
        if self.config_cache_ttl_seconds < 0:
            raise ValueError("PEOPLE_LOOKUP_CONFIG_CACHE_TTL_SECONDS must be >= 0.")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation as error:
        raise ValueError(f"Invalid decimal value for {name}: {raw!r}") from error
