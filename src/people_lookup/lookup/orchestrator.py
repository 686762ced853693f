"""Search task lifecycle: admission, search and detail waves, filtering, settlement."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from decimal import ROUND_FLOOR, Decimal
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from people_lookup.lookup.billing import (
    AdmissionResult,
    BillingPolicy,
    SettlementOutcome,
    build_billing_policy,
)
from people_lookup.lookup.cache import CacheWrite, DetailCacheStore
from people_lookup.lookup.errors import (
    InsufficientCreditsError,
    ProviderError,
    ProviderUnavailableError,
    TaskStateError,
)
from people_lookup.lookup.executor import TaskExecutor
from people_lookup.lookup.filters import FilterPipelineResult, run_filter_pipeline
from people_lookup.lookup.ledger import CreditLedger
from people_lookup.lookup.models import (
    BillingOutcome,
    BillingPolicyName,
    CandidateRef,
    DetailRecord,
    SearchRequest,
    SearchTaskView,
    SubTask,
    TaskCounters,
    TaskLogEntry,
    TaskProgressUpdate,
)
from people_lookup.lookup.pricing import CostBreakdown, CostEstimate, estimate_cost, metered_cost
from people_lookup.lookup.provider.base import LookupProvider
from people_lookup.lookup.repository import SearchTaskRepository
from people_lookup.lookup.runtime_config import LookupConfig, RuntimeConfigProvider
from people_lookup.storage.common import utc_now

logger = logging.getLogger(__name__)

SEARCH_PHASE_END = 50
DETAIL_PHASE_END = 95


class TaskLog:
    """In-memory mirror of the persisted task log, capped to the newest entries."""

    def __init__(self, cap: int) -> None:
        self._cap = cap
        self._entries: list[TaskLogEntry] = []
        self._lock = threading.Lock()

    def add(self, message: str) -> None:
        with self._lock:
            self._entries.append(TaskLogEntry(timestamp=utc_now(), message=message))
            if len(self._entries) > self._cap:
                del self._entries[: len(self._entries) - self._cap]

    def snapshot(self) -> list[TaskLogEntry]:
        with self._lock:
            return list(self._entries)


@dataclass(slots=True)
class _SearchOutcome:
    sub_task: SubTask
    detail_links: list[str] = field(default_factory=list)
    requests_used: int = 0
    error: str | None = None


@dataclass(slots=True)
class _DetailOutcome:
    candidate: CandidateRef
    record: DetailRecord | None = None
    requests_used: int = 0
    error: str | None = None


@dataclass(slots=True)
class TaskRun:
    """Execution state of one admitted task; lives only inside its job."""

    task_id: str
    owner_id: str
    request: SearchRequest
    sub_tasks: list[SubTask]
    config: LookupConfig
    policy: BillingPolicy
    admission: AdmissionResult
    log: TaskLog
    search_requests: int = 0
    detail_requests: int = 0
    cache_hits: int = 0
    completed_sub_tasks: int = 0
    candidates: list[CandidateRef] = field(default_factory=list)
    resolved: dict[str, DetailRecord] = field(default_factory=dict)
    settlement: SettlementOutcome | None = None


class TaskOrchestrator:
    """Owns admission and the phased execution of search tasks.

    ``submit`` returns as soon as the task is admitted and handed to the
    executor; pollers read everything else from the task store.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SearchTaskRepository,
        cache: DetailCacheStore,
        ledger: CreditLedger,
        provider: LookupProvider,
        executor: TaskExecutor,
        config_provider: RuntimeConfigProvider,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.ledger = ledger
        self.provider = provider
        self.executor = executor
        self.config_provider = config_provider

    def estimate(self, request: SearchRequest) -> CostEstimate:
        config = self.config_provider.snapshot()
        return _estimate(config, len(request.sub_tasks()))

    def submit(
        self,
        owner_id: str,
        request: SearchRequest,
        *,
        policy: BillingPolicyName | None = None,
    ) -> SearchTaskView:
        """Admit and schedule a batch.

        Raises ``ProviderUnavailableError`` before any task exists, and
        ``InsufficientCreditsError`` (with ``task_id`` set) after recording the
        task as ``insufficient_credits``.
        """

        config = self.config_provider.snapshot()
        if not config.provider_enabled or not self.provider.is_available():
            raise ProviderUnavailableError("Lookup provider is not available.")

        policy_name = policy or config.billing_policy
        billing = build_billing_policy(policy_name, self.ledger)
        request = replace(request, filters=request.filters.with_defaults(config.filter_defaults))
        sub_tasks = request.sub_tasks()
        estimate = _estimate(config, len(sub_tasks))

        task = self.repository.create(
            owner_id=owner_id,
            request=request,
            billing_policy=policy_name,
        )
        log = TaskLog(self.repository.log_cap)
        log.add(
            f"Task created: {len(sub_tasks)} sub-tasks, {request.mode.value}, "
            f"policy {policy_name.value}",
        )
        log.add(f"Estimated cost: minimum {estimate.minimum}, maximum {estimate.maximum}")
        try:
            admission = billing.admit(owner_id, task.task_id, estimate)
        except InsufficientCreditsError as error:
            error.task_id = task.task_id
            log.add(f"Rejected: {error}")
            self.repository.mark_insufficient_credits(
                task.task_id,
                note=str(error),
                logs=log.snapshot(),
            )
            logger.info("Task %s rejected at admission: %s", task.task_id, error)
            raise
        except Exception as error:
            log.add(f"Admission failed: {error}")
            self.repository.fail(task.task_id, f"Admission failed: {error}", logs=log.snapshot())
            logger.exception("Admission for task %s failed", task.task_id)
            raise

        if admission.frozen_amount > 0:
            log.add(f"Frozen {admission.frozen_amount} credits")
        else:
            log.add(f"Balance check passed: available {admission.available_balance}")
        try:
            self.repository.mark_running(
                task.task_id,
                frozen_amount=admission.frozen_amount,
                logs=log.snapshot(),
            )
        except TaskStateError:
            logger.info("Task %s cancelled before start; releasing admission", task.task_id)
            billing.settle(owner_id, task.task_id, admission, Decimal("0.0"))
            return self.repository.get(task.task_id)

        run = TaskRun(
            task_id=task.task_id,
            owner_id=owner_id,
            request=request,
            sub_tasks=sub_tasks,
            config=config,
            policy=billing,
            admission=admission,
            log=log,
        )
        self.executor.submit(task.task_id, partial(self.run_task, run))
        return self.repository.get(task.task_id)

    def cancel(self, task_id: str, *, owner_id: str | None = None) -> SearchTaskView:
        """Request cooperative cancellation; takes effect at the next wave boundary."""

        return self.repository.request_cancel(task_id, owner_id=owner_id)

    def run_task(self, run: TaskRun) -> None:
        try:
            self._run_phases(run)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s failed", run.task_id)
            message = str(error) or type(error).__name__
            run.log.add(f"Task failed: {message}")
            self.repository.fail(run.task_id, message, logs=run.log.snapshot())

    def _run_phases(self, run: TaskRun) -> None:
        if self._search_phase(run):
            self._finish_cancelled(run)
            return

        misses = self._resolve_from_cache(run)

        if self._detail_phase(run, misses):
            self._finish_cancelled(run)
            return

        records = self._ordered_records(run)
        filtered = self._apply_filters(run, records)
        breakdown = self._settle(run)
        self.repository.save_results(run.task_id, filtered.records)
        run.log.add(
            f"Completed: {len(filtered.records)} results, {filtered.filtered_out} filtered out",
        )
        self.repository.complete(
            run.task_id,
            self._counters(run, breakdown, filtered),
            logs=run.log.snapshot(),
        )

    def _search_phase(self, run: TaskRun) -> bool:
        """Run search waves; True when cancellation stopped the phase."""

        total = len(run.sub_tasks)
        wave_size = run.config.wave_size
        seen: set[str] = set()
        run.log.add(f"Search phase: {total} sub-tasks in waves of {wave_size}")
        with ThreadPoolExecutor(
            max_workers=wave_size,
            thread_name_prefix=f"search-{run.task_id[:8]}",
        ) as pool:
            for start in range(0, total, wave_size):
                if self.repository.is_cancel_requested(run.task_id):
                    return True
                wave = run.sub_tasks[start : start + wave_size]
                outcomes = list(pool.map(partial(self._search_sub_task, run), wave))
                for outcome in outcomes:
                    run.search_requests += outcome.requests_used
                    position = f"[{outcome.sub_task.index + 1}/{total}] {outcome.sub_task.label}"
                    if outcome.error is not None:
                        run.log.add(f"{position} search failed: {outcome.error}")
                        continue
                    run.log.add(
                        f"{position}: {len(outcome.detail_links)} candidates, "
                        f"{outcome.requests_used} pages",
                    )
                    for link in outcome.detail_links:
                        if link in seen:
                            continue
                        seen.add(link)
                        run.candidates.append(
                            CandidateRef(
                                detail_link=link,
                                sub_task_index=outcome.sub_task.index,
                                search_name=outcome.sub_task.name,
                                search_location=outcome.sub_task.location,
                            ),
                        )
                run.completed_sub_tasks = min(start + len(wave), total)
                self.repository.update_progress(
                    run.task_id,
                    TaskProgressUpdate(
                        progress_percent=run.completed_sub_tasks * SEARCH_PHASE_END // total,
                        completed_sub_tasks=run.completed_sub_tasks,
                        search_requests_used=run.search_requests,
                        logs=run.log.snapshot(),
                    ),
                )
        run.log.add(
            f"Search phase done: {len(run.candidates)} unique candidates, "
            f"{run.search_requests} search pages",
        )
        return False

    def _search_sub_task(self, run: TaskRun, sub_task: SubTask) -> _SearchOutcome:
        outcome = _SearchOutcome(sub_task=sub_task)
        try:
            for page in range(1, run.config.max_pages + 1):
                result = self.provider.search(sub_task.name, sub_task.location, page)
                outcome.requests_used += result.pages_consumed
                outcome.detail_links.extend(result.detail_links)
                if not result.has_more or not result.detail_links:
                    break
        except ProviderError as error:
            outcome.requests_used += error.requests_used
            outcome.detail_links = []
            outcome.error = str(error)
        except Exception as error:  # noqa: BLE001
            logger.warning("Search for %s failed", sub_task.label, exc_info=True)
            outcome.detail_links = []
            outcome.error = f"{type(error).__name__}: {error}"
        return outcome

    def _resolve_from_cache(self, run: TaskRun) -> list[CandidateRef]:
        cached = self.cache.get_many(candidate.detail_link for candidate in run.candidates)
        misses: list[CandidateRef] = []
        for candidate in run.candidates:
            payload = cached.get(candidate.detail_link)
            if payload is None:
                misses.append(candidate)
                continue
            try:
                record = DetailRecord.from_payload(payload)
            except ValueError:
                logger.warning("Unreadable cache payload for %s", candidate.detail_link)
                misses.append(candidate)
                continue
            run.resolved[candidate.detail_link] = record.with_provenance(candidate, from_cache=True)
        run.cache_hits = len(run.resolved)
        run.log.add(f"Cache: {run.cache_hits} hits, {len(misses)} to fetch")
        self.repository.update_progress(
            run.task_id,
            TaskProgressUpdate(
                progress_percent=SEARCH_PHASE_END,
                cache_hits=run.cache_hits,
                logs=run.log.snapshot(),
            ),
        )
        return misses

    def _detail_phase(self, run: TaskRun, misses: list[CandidateRef]) -> bool:
        """Fetch cache misses in waves; True when cancellation stopped the phase."""

        if not misses:
            return False
        budget = self._detail_budget(run)
        if len(misses) > budget:
            run.log.add(
                f"Detail budget allows {budget} fetches; {len(misses) - budget} candidates skipped",
            )
            misses = misses[:budget]
        total = len(misses)
        wave_size = run.config.wave_size
        ttl_days = run.config.cache_ttl_days
        with ThreadPoolExecutor(
            max_workers=wave_size,
            thread_name_prefix=f"detail-{run.task_id[:8]}",
        ) as pool:
            for start in range(0, total, wave_size):
                if self.repository.is_cancel_requested(run.task_id):
                    return True
                wave = misses[start : start + wave_size]
                outcomes = list(pool.map(self._fetch_detail, wave))
                fresh: list[CacheWrite] = []
                for outcome in outcomes:
                    run.detail_requests += outcome.requests_used
                    link = outcome.candidate.detail_link
                    if outcome.record is None:
                        run.log.add(f"Detail fetch failed for {link}: {outcome.error}")
                        continue
                    run.resolved[link] = outcome.record.with_provenance(
                        outcome.candidate,
                        from_cache=False,
                    )
                    fresh.append(CacheWrite(link, outcome.record.to_payload(), ttl_days))
                self._store_in_cache(fresh)
                done = min(start + len(wave), total)
                span = DETAIL_PHASE_END - SEARCH_PHASE_END
                self.repository.update_progress(
                    run.task_id,
                    TaskProgressUpdate(
                        progress_percent=SEARCH_PHASE_END + done * span // total,
                        detail_requests_used=run.detail_requests,
                        logs=run.log.snapshot(),
                    ),
                )
        run.log.add(f"Detail phase done: {run.detail_requests} detail fetches")
        return False

    def _fetch_detail(self, candidate: CandidateRef) -> _DetailOutcome:
        try:
            fetched = self.provider.fetch_detail(candidate.detail_link)
        except ProviderError as error:
            return _DetailOutcome(
                candidate=candidate,
                requests_used=error.requests_used,
                error=str(error),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Detail fetch for %s failed", candidate.detail_link, exc_info=True)
            return _DetailOutcome(candidate=candidate, error=f"{type(error).__name__}: {error}")
        return _DetailOutcome(
            candidate=candidate,
            record=fetched.record,
            requests_used=fetched.requests_used,
        )

    def _detail_budget(self, run: TaskRun) -> int:
        """Fetches allowed for this task, bounded by the prepaid freeze when there is one."""

        budget = len(run.sub_tasks) * run.config.max_details_per_subtask
        if run.admission.policy != BillingPolicyName.PREPAID_FREEZE_SETTLE:
            return budget
        prices = run.config.prices
        if prices.detail_cost <= 0:
            return budget
        remaining = run.admission.frozen_amount - run.search_requests * prices.search_cost
        if remaining <= 0:
            return 0
        affordable = int((remaining / prices.detail_cost).to_integral_value(rounding=ROUND_FLOOR))
        return min(budget, affordable)

    def _store_in_cache(self, entries: list[CacheWrite]) -> None:
        if not entries:
            return
        try:
            self.cache.put_many(entries)
        except SQLAlchemyError:
            logger.warning("Cache write of %d entries failed", len(entries), exc_info=True)

    def _ordered_records(self, run: TaskRun) -> list[DetailRecord]:
        return [
            run.resolved[candidate.detail_link]
            for candidate in run.candidates
            if candidate.detail_link in run.resolved
        ]

    def _apply_filters(self, run: TaskRun, records: list[DetailRecord]) -> FilterPipelineResult:
        result = run_filter_pipeline(records, run.request.filters)
        for stage in result.stages:
            if stage.removed:
                run.log.add(
                    f"Filter {stage.name}: {stage.before} -> {stage.after} "
                    f"(removed {stage.removed})",
                )
        return result

    def _settle(self, run: TaskRun) -> CostBreakdown:
        """Bill metered usage exactly once per task."""

        breakdown = metered_cost(
            search_requests=run.search_requests,
            detail_requests=run.detail_requests,
            prices=run.config.prices,
            cache_hits=run.cache_hits,
        )
        if run.settlement is not None:
            return breakdown
        run.log.add(
            f"Cost: {breakdown.search_requests} search pages x {run.config.prices.search_cost} "
            f"= {breakdown.search_cost}; {breakdown.detail_requests} detail fetches x "
            f"{run.config.prices.detail_cost} = {breakdown.detail_cost}; total {breakdown.total}",
        )
        if breakdown.cache_savings > 0:
            run.log.add(f"Cache hits saved {breakdown.cache_savings} credits")
        outcome = run.policy.settle(run.owner_id, run.task_id, run.admission, breakdown.total)
        run.settlement = outcome
        if outcome.status == BillingOutcome.SHORTFALL:
            run.log.add(outcome.note or "Billing shortfall")
        elif outcome.status == BillingOutcome.NOT_BILLED:
            run.log.add("No billable usage")
        elif run.admission.frozen_amount > 0:
            run.log.add(
                f"Settled: frozen {run.admission.frozen_amount}, charged {outcome.cost}, "
                f"refunded {outcome.refund}",
            )
        else:
            run.log.add(f"Deducted {outcome.cost} credits")
        return breakdown

    def _finish_cancelled(self, run: TaskRun) -> None:
        run.log.add("Cancellation observed at wave boundary; stopping")
        filtered = self._apply_filters(run, self._ordered_records(run))
        breakdown = self._settle(run)
        self.repository.save_results(run.task_id, filtered.records)
        self.repository.finalize_cancelled(
            run.task_id,
            self._counters(run, breakdown, filtered),
            logs=run.log.snapshot(),
        )

    @staticmethod
    def _counters(
        run: TaskRun,
        breakdown: CostBreakdown,
        filtered: FilterPipelineResult,
    ) -> TaskCounters:
        settlement = run.settlement
        return TaskCounters(
            search_requests_used=run.search_requests,
            detail_requests_used=run.detail_requests,
            cache_hits=run.cache_hits,
            total_results=len(filtered.records),
            filtered_out=filtered.filtered_out,
            completed_sub_tasks=run.completed_sub_tasks,
            credits_used=settlement.cost if settlement else breakdown.total,
            billing_status=settlement.status if settlement else None,
            billing_note=settlement.note if settlement else None,
        )


def _estimate(config: LookupConfig, sub_task_count: int) -> CostEstimate:
    return estimate_cost(
        sub_task_count=sub_task_count,
        prices=config.prices,
        max_pages=config.max_pages,
        max_details_per_subtask=config.max_details_per_subtask,
    )
