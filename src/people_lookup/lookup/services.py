"""Polling interface over the orchestrator and task store, plus component wiring."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from people_lookup.config import Settings
from people_lookup.lookup.cache import DetailCacheStore
from people_lookup.lookup.executor import TaskExecutor
from people_lookup.lookup.ledger import CreditLedger
from people_lookup.lookup.models import (
    BillingPolicyName,
    FilterConfig,
    ResultPage,
    SearchMode,
    SearchRequest,
    SearchTaskView,
    TaskPage,
)
from people_lookup.lookup.orchestrator import TaskOrchestrator
from people_lookup.lookup.pricing import CostEstimate
from people_lookup.lookup.provider.base import LookupProvider
from people_lookup.lookup.repository import SearchTaskRepository
from people_lookup.lookup.runtime_config import RuntimeConfigProvider, SystemConfigRepository
from people_lookup.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class SubmitSearch:
    """Caller-facing submission payload."""

    owner_id: str
    names: tuple[str, ...]
    mode: SearchMode = SearchMode.NAME_ONLY
    locations: tuple[str, ...] = ()
    filters: FilterConfig | None = None
    policy: BillingPolicyName | None = None

    def to_request(self) -> SearchRequest:
        return SearchRequest(
            names=self.names,
            mode=self.mode,
            locations=self.locations,
            filters=self.filters or FilterConfig(),
        )


class LookupService:
    """Submit, poll and cancel search tasks.

    Failures of a running task are reported through the task status; only
    admission problems raise to the caller.
    """

    def __init__(self, orchestrator: TaskOrchestrator, repository: SearchTaskRepository) -> None:
        self.orchestrator = orchestrator
        self.repository = repository

    def submit(self, command: SubmitSearch) -> SearchTaskView:
        return self.orchestrator.submit(
            command.owner_id,
            command.to_request(),
            policy=command.policy,
        )

    def estimate(self, command: SubmitSearch) -> CostEstimate:
        return self.orchestrator.estimate(command.to_request())

    def get_status(self, task_id: str, *, owner_id: str | None = None) -> SearchTaskView:
        return self.repository.get(task_id, owner_id=owner_id)

    def get_results(
        self,
        task_id: str,
        *,
        page: int = 1,
        page_size: int = 50,
        owner_id: str | None = None,
    ) -> ResultPage:
        return self.repository.get_results(
            task_id,
            page=page,
            page_size=page_size,
            owner_id=owner_id,
        )

    def cancel(self, task_id: str, *, owner_id: str | None = None) -> SearchTaskView:
        return self.orchestrator.cancel(task_id, owner_id=owner_id)

    def list_history(self, owner_id: str, *, page: int = 1, page_size: int = 20) -> TaskPage:
        return self.repository.list_by_owner(owner_id, page=page, page_size=page_size)


@dataclass(slots=True)
class LookupRuntime:
    """Every component of one process, sharing a database file."""

    settings: Settings
    repository: SearchTaskRepository
    cache: DetailCacheStore
    ledger: CreditLedger
    config_store: SystemConfigRepository
    config_provider: RuntimeConfigProvider
    executor: TaskExecutor
    orchestrator: TaskOrchestrator
    service: LookupService

    def close(self, *, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
        self.repository.close()
        self.cache.close()
        self.ledger.close()
        self.config_store.close()


def build_runtime(settings: Settings, provider: LookupProvider) -> LookupRuntime:
    """Migrate the database and wire components together."""

    settings.validate()
    upgrade_head(settings.db_path)
    busy_timeout_ms = settings.store.sqlite_busy_timeout_ms
    repository = SearchTaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=busy_timeout_ms,
        log_cap=settings.store.log_cap,
        max_write_retries=settings.store.max_retries,
        retry_backoff_seconds=settings.store.retry_backoff_seconds,
    )
    cache = DetailCacheStore(settings.db_path, sqlite_busy_timeout_ms=busy_timeout_ms)
    ledger = CreditLedger(settings.db_path, sqlite_busy_timeout_ms=busy_timeout_ms)
    config_store = SystemConfigRepository(settings.db_path, sqlite_busy_timeout_ms=busy_timeout_ms)
    config_provider = RuntimeConfigProvider(settings, config_store)
    executor = TaskExecutor(max_workers=settings.execution.executor_workers)
    orchestrator = TaskOrchestrator(
        repository=repository,
        cache=cache,
        ledger=ledger,
        provider=provider,
        executor=executor,
        config_provider=config_provider,
    )
    return LookupRuntime(
        settings=settings,
        repository=repository,
        cache=cache,
        ledger=ledger,
        config_store=config_store,
        config_provider=config_provider,
        executor=executor,
        orchestrator=orchestrator,
        service=LookupService(orchestrator, repository),
    )


@contextmanager
def open_runtime(settings: Settings, provider: LookupProvider) -> Iterator[LookupRuntime]:
    runtime = build_runtime(settings, provider)
    try:
        yield runtime
    finally:
        runtime.close()
