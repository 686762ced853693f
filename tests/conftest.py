"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from people_lookup.config import ExecutionSettings, Settings, StoreSettings
from people_lookup.lookup.models import DetailRecord
from people_lookup.lookup.provider.base import LookupProvider
from people_lookup.lookup.services import LookupRuntime, build_runtime


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "lookup.db"


@pytest.fixture()
def make_settings(db_path: Path) -> Callable[..., Settings]:
    """Settings independent of the process environment, with fast store retries."""

    def _make(**execution: Any) -> Settings:
        settings = Settings(db_path=db_path)
        return replace(
            settings,
            execution=replace(ExecutionSettings(wave_size=2, executor_workers=2), **execution),
            store=StoreSettings(retry_backoff_seconds=0.0),
        )

    return _make


@pytest.fixture()
def runtime_factory(
    make_settings: Callable[..., Settings],
) -> Iterator[Callable[..., LookupRuntime]]:
    """Build runtimes that are closed at teardown."""

    runtimes: list[LookupRuntime] = []

    def _build(
        provider: LookupProvider,
        *,
        settings: Settings | None = None,
        **execution: Any,
    ) -> LookupRuntime:
        runtime = build_runtime(settings or make_settings(**execution), provider)
        runtimes.append(runtime)
        return runtime

    yield _build
    for runtime in runtimes:
        runtime.close()


def make_record(detail_link: str, **fields: Any) -> DetailRecord:
    values: dict[str, Any] = {"name": "Jane Doe", "age": 60, "report_year": 2025}
    values.update(fields)
    return DetailRecord(detail_link=detail_link, **values)


@pytest.fixture()
def record_factory() -> Callable[..., DetailRecord]:
    return make_record

