"""Controllers for lookup CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from people_lookup.config import Settings
from people_lookup.lookup.cache import DetailCacheStore
from people_lookup.lookup.errors import ProviderUnavailableError
from people_lookup.lookup.export import write_csv
from people_lookup.lookup.ledger import CreditLedger
from people_lookup.lookup.models import (
    BillingPolicyName,
    FilterConfig,
    SearchMode,
    SearchRequest,
    SearchTaskView,
    TaskStatus,
)
from people_lookup.lookup.pricing import estimate_cost
from people_lookup.lookup.provider.fixture import FixtureLookupProvider
from people_lookup.lookup.repository import SearchTaskRepository
from people_lookup.lookup.runtime_config import (
    CONFIG_KEYS,
    RuntimeConfigProvider,
    SystemConfigRepository,
)
from people_lookup.lookup.services import SubmitSearch, open_runtime


@dataclass(slots=True)
class AccountCreditCommand:
    """CLI input for adding credits to an account."""

    db_path: Path | None
    account_id: str | None
    amount: Decimal
    description: str


@dataclass(slots=True)
class AccountShowCommand:
    db_path: Path | None
    account_id: str | None
    entries: int


@dataclass(slots=True)
class SearchSubmitCommand:
    """CLI input for one batch submission."""

    db_path: Path | None
    names: tuple[str, ...]
    locations: tuple[str, ...]
    mode: str | None
    filters: FilterConfig
    policy: str | None
    provider_fixture: Path | None


@dataclass(slots=True)
class SearchEstimateCommand:
    db_path: Path | None
    names: tuple[str, ...]
    locations: tuple[str, ...]
    mode: str | None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input addressing one task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SearchResultsCommand:
    db_path: Path | None
    task_id: str
    page: int
    page_size: int


@dataclass(slots=True)
class SearchListCommand:
    db_path: Path | None
    page: int
    page_size: int


@dataclass(slots=True)
class SearchExportCommand:
    db_path: Path | None
    task_id: str
    output_path: Path


@dataclass(slots=True)
class ConfigSetCommand:
    db_path: Path | None
    key: str
    value: str | None


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


class LookupCliController:
    """Coordinates account, search, config and cache CLI operations."""

    def account_credit(self, command: AccountCreditCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        account_id = command.account_id or settings.user_context.user_id
        with _ledger(settings) as ledger:
            entry = ledger.credit(account_id, command.amount, description=command.description)
        return [
            f"Credited {entry.amount} to {account_id}",
            f"Available balance: {entry.balance_after}",
        ]

    def account_show(self, command: AccountShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        account_id = command.account_id or settings.user_context.user_id
        with _ledger(settings) as ledger:
            account = ledger.get_account(account_id)
            entries = ledger.list_entries(account_id, limit=command.entries)
        lines = [
            f"Account: {account.account_id}",
            f"Available: {account.available_balance}",
            f"Frozen: {account.frozen_balance}",
            f"Entries (latest {len(entries)}):",
        ]
        for entry in entries:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.entry_type.value} {entry.amount:+} "
                f"balance={entry.balance_after} task={entry.related_task_id or '-'} "
                f"{entry.description}",
            )
        return lines

    def search_submit(self, command: SearchSubmitCommand) -> list[str]:
        """Submit a batch and run it to a terminal status in this process."""

        settings = Settings.from_env(db_path=command.db_path)
        provider = _fixture_provider(settings, command.provider_fixture)
        submission = SubmitSearch(
            owner_id=settings.user_context.user_id,
            names=command.names,
            mode=_parse_mode(command.mode, command.locations),
            locations=command.locations,
            filters=command.filters,
            policy=BillingPolicyName(command.policy) if command.policy else None,
        )
        with open_runtime(settings, provider) as runtime:
            task = runtime.service.submit(submission)
            lines = [f"Task submitted: task_id={task.task_id} status={task.status.value}"]
            runtime.executor.wait_idle()
            task = runtime.service.get_status(task.task_id)
        return lines + _task_lines(task)

    def search_estimate(self, command: SearchEstimateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        request = SearchRequest(
            names=command.names,
            mode=_parse_mode(command.mode, command.locations),
            locations=command.locations,
        )
        with _config_provider(settings) as config_provider:
            config = config_provider.snapshot()
        estimate = estimate_cost(
            sub_task_count=len(request.sub_tasks()),
            prices=config.prices,
            max_pages=config.max_pages,
            max_details_per_subtask=config.max_details_per_subtask,
        )
        return [
            f"Sub-tasks: {estimate.sub_tasks}",
            f"Minimum cost: {estimate.minimum}",
            f"Maximum cost: {estimate.maximum}",
            f"Default policy: {config.billing_policy.value}",
        ]

    def search_status(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get(command.task_id, owner_id=settings.user_context.user_id)
        lines = _task_lines(task)
        lines.append(f"Log ({len(task.logs)} entries):")
        lines.extend(f"  {entry.timestamp.isoformat()} {entry.message}" for entry in task.logs)
        return lines

    def search_results(self, command: SearchResultsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            results = repository.get_results(
                command.task_id,
                page=command.page,
                page_size=command.page_size,
                owner_id=settings.user_context.user_id,
            )
        lines = [f"Results: {results.total} (page {results.page})"]
        for record in results.items:
            lines.append(
                f"  {record.name} age={record.age if record.age is not None else '-'} "
                f"phone={record.phone or '-'} location={record.location or '-'} "
                f"source={'cache' if record.from_cache else 'live'} link={record.detail_link}",
            )
        return lines

    def search_cancel(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.request_cancel(
                command.task_id,
                owner_id=settings.user_context.user_id,
            )
        if task.status is TaskStatus.CANCELLED:
            return [f"Task cancelled: {task.task_id}"]
        return [f"Cancellation requested: {task.task_id} (stops at the next wave boundary)"]

    def search_list(self, command: SearchListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_by_owner(
                settings.user_context.user_id,
                page=command.page,
                page_size=command.page_size,
            )
        lines = [f"Tasks: {tasks.total} (page {tasks.page})"]
        for task in tasks.items:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"progress={task.progress_percent}% results={task.total_results} "
                f"credits={task.credits_used} created_at={task.created_at.isoformat()}",
            )
        return lines

    def search_export(self, command: SearchExportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            records = repository.iter_results(
                command.task_id,
                owner_id=settings.user_context.user_id,
            )
            count = write_csv(records, command.output_path)
        return [f"Exported {count} records to {command.output_path}"]

    def config_set(self, command: ConfigSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.key not in CONFIG_KEYS:
            raise ValueError(
                f"Unknown config key {command.key!r}; expected one of: "
                + ", ".join(sorted(CONFIG_KEYS)),
            )
        with _config_provider(settings) as config_provider:
            if command.value is None:
                removed = config_provider.unset_value(command.key)
                return [f"Config {command.key} {'reset' if removed else 'was not set'}"]
            config_provider.set_value(command.key, command.value)
        return [f"Config {command.key} = {command.value}"]

    def config_show(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _config_provider(settings) as config_provider:
            config = config_provider.snapshot()
            overrides = config_provider.overrides()
        return [
            f"search_cost = {config.prices.search_cost}",
            f"detail_cost = {config.prices.detail_cost}",
            f"default_min_age = {config.filter_defaults.min_age}",
            f"default_max_age = {config.filter_defaults.max_age}",
            f"default_min_report_year = {config.filter_defaults.min_report_year}",
            f"cache_ttl_days = {config.cache_ttl_days}",
            f"wave_size = {config.wave_size}",
            f"max_pages = {config.max_pages}",
            f"max_details_per_subtask = {config.max_details_per_subtask}",
            f"billing_policy = {config.billing_policy.value}",
            f"enabled = {str(config.provider_enabled).lower()}",
            f"provider_token = {'set' if config.provider_token else '-'}",
            f"Overrides: {', '.join(sorted(overrides)) or '-'}",
        ]

    def cache_purge(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _cache(settings) as cache:
            removed = cache.purge_expired()
        return [f"Expired cache entries removed: {removed}"]

    def cache_stats(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _cache(settings) as cache:
            stats = cache.stats()
        return [f"Cache entries: {stats.total} (live {stats.live})"]


def _task_lines(task: SearchTaskView) -> list[str]:
    lines = [
        f"Task: {task.task_id}",
        f"Status: {task.status.value}",
        f"Progress: {task.progress_percent}%",
        f"Sub-tasks: {task.completed_sub_tasks}/{task.total_sub_tasks}",
        f"Search requests: {task.search_requests_used}",
        f"Detail requests: {task.detail_requests_used}",
        f"Cache hits: {task.cache_hits}",
        f"Results: {task.total_results} (filtered out {task.filtered_out})",
        f"Credits used: {task.credits_used}",
        f"Billing: {task.billing_policy.value} "
        f"{task.billing_status.value if task.billing_status else '-'}",
    ]
    if task.billing_note:
        lines.append(f"Billing note: {task.billing_note}")
    if task.error_message:
        lines.append(f"Error: {task.error_message}")
    return lines


def _parse_mode(raw: str | None, locations: tuple[str, ...]) -> SearchMode:
    if raw is None:
        return SearchMode.NAME_LOCATION if locations else SearchMode.NAME_ONLY
    try:
        return SearchMode(raw)
    except ValueError as error:
        raise ValueError(f"Unsupported search mode: {raw!r}") from error


def _fixture_provider(settings: Settings, override: Path | None) -> FixtureLookupProvider:
    path = override or settings.provider.fixture_path
    if path is None:
        raise ProviderUnavailableError(
            "No lookup provider configured. "
            "Pass --provider-fixture or set PEOPLE_LOOKUP_PROVIDER_FIXTURE.",
        )
    return FixtureLookupProvider.from_path(path)


@contextmanager
def _repository(settings: Settings) -> Iterator[SearchTaskRepository]:
    repository = SearchTaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        log_cap=settings.store.log_cap,
        max_write_retries=settings.store.max_retries,
        retry_backoff_seconds=settings.store.retry_backoff_seconds,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _ledger(settings: Settings) -> Iterator[CreditLedger]:
    ledger = CreditLedger(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    ledger.init_schema()
    try:
        yield ledger
    finally:
        ledger.close()


@contextmanager
def _cache(settings: Settings) -> Iterator[DetailCacheStore]:
    cache = DetailCacheStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    cache.init_schema()
    try:
        yield cache
    finally:
        cache.close()


@contextmanager
def _config_provider(settings: Settings) -> Iterator[RuntimeConfigProvider]:
    store = SystemConfigRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield RuntimeConfigProvider(settings, store)
    finally:
        store.close()
