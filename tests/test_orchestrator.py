from __future__ import annotations

import threading
from decimal import Decimal
from typing import Any

import allure
import pytest

from people_lookup.lookup.cache import CacheWrite
from people_lookup.lookup.errors import InsufficientCreditsError, ProviderUnavailableError
from people_lookup.lookup.models import (
    BillingOutcome,
    BillingPolicyName,
    FilterConfig,
    LedgerEntryType,
    SearchMode,
    TaskStatus,
)
from people_lookup.lookup.provider.fixture import FixtureLookupProvider
from people_lookup.lookup.services import LookupRuntime, SubmitSearch

pytestmark = [
    allure.epic("Search Tasks"),
    allure.feature("Task Orchestration"),
]

OWNER = "user-1"


def _detail(age: int, **fields: Any) -> dict[str, Any]:
    return {"name": "Jane Doe", "age": age, "report_year": 2025, "phone": "5125550100", **fields}


def _funded(runtime: LookupRuntime, amount: str = "100.0") -> LookupRuntime:
    runtime.ledger.credit(OWNER, Decimal(amount))
    return runtime


def _run(runtime: LookupRuntime, submission: SubmitSearch):
    task = runtime.service.submit(submission)
    assert runtime.executor.wait_idle(timeout=30)
    return runtime.service.get_status(task.task_id, owner_id=OWNER)


def _messages(task) -> str:
    return "\n".join(entry.message for entry in task.logs)


class _BlockingProvider(FixtureLookupProvider):
    """Holds the search for one name until released."""

    def __init__(self, data: dict[str, Any], blocked_name: str) -> None:
        super().__init__(data)
        self.blocked_name = blocked_name
        self.blocked = threading.Event()
        self.release = threading.Event()

    def search(self, name, location, page):
        if name == self.blocked_name:
            self.blocked.set()
            self.release.wait(timeout=10)
        return super().search(name, location, page)


def test_cached_and_fresh_records_are_merged_and_filtered(runtime_factory, record_factory) -> None:
    provider = FixtureLookupProvider(
        {
            "searches": {"Jane Doe": [["link-1", "link-2", "link-3"]]},
            "details": {"link-3": _detail(85)},
        },
    )
    runtime = _funded(runtime_factory(provider))
    runtime.cache.put_many(
        [
            CacheWrite(link, record_factory(link, age=60).to_payload(), ttl_days=30)
            for link in ("link-1", "link-2")
        ],
    )

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert task.status == TaskStatus.COMPLETED
    assert task.progress_percent == 100
    assert task.cache_hits == 2
    assert task.search_requests_used == 1
    assert task.detail_requests_used == 1
    assert task.total_results == 2
    assert task.filtered_out == 1
    assert task.credits_used == Decimal("0.6")
    assert task.billing_status == BillingOutcome.SETTLED
    assert provider.detail_calls == ["link-3"]
    results = runtime.service.get_results(task.task_id, owner_id=OWNER)
    assert [(record.detail_link, record.from_cache) for record in results.items] == [
        ("link-1", True),
        ("link-2", True),
    ]
    assert runtime.cache.get_many(["link-3"])["link-3"]["age"] == 85
    assert "Filter age_range: 3 -> 2 (removed 1)" in _messages(task)


def test_prepaid_task_is_billed_exactly_once(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {"searches": {"Jane Doe": [["link-1"]]}, "details": {"link-1": _detail(60)}},
    )
    runtime = _funded(runtime_factory(provider, max_pages=2, max_details_per_subtask=3))

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    entries = runtime.ledger.list_entries(OWNER, task_id=task.task_id)
    assert [(entry.entry_type, entry.amount) for entry in entries] == [
        (LedgerEntryType.FREEZE, Decimal("-1.5")),
        (LedgerEntryType.SETTLE_REFUND, Decimal("0.9")),
    ]
    account = runtime.ledger.get_account(OWNER)
    assert account.available_balance == Decimal("99.4")
    assert account.frozen_balance == Decimal("0.0")
    assert runtime.ledger.replay_balance(OWNER) == account.available_balance
    assert task.credits_used == Decimal("0.6")
    assert task.frozen_amount == Decimal("1.5")


def test_postpaid_task_deducts_metered_cost(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {"searches": {"Jane Doe": [["link-1"]]}, "details": {"link-1": _detail(60)}},
    )
    runtime = _funded(runtime_factory(provider), "1.0")

    task = _run(
        runtime,
        SubmitSearch(
            owner_id=OWNER,
            names=("Jane Doe",),
            policy=BillingPolicyName.POSTPAID_DEDUCT,
        ),
    )

    entries = runtime.ledger.list_entries(OWNER, task_id=task.task_id)
    assert [(entry.entry_type, entry.amount) for entry in entries] == [
        (LedgerEntryType.DEDUCT, Decimal("-0.6")),
    ]
    assert task.billing_policy == BillingPolicyName.POSTPAID_DEDUCT
    assert runtime.ledger.get_account(OWNER).available_balance == Decimal("0.4")


def test_postpaid_rejection_makes_no_provider_calls(runtime_factory) -> None:
    provider = FixtureLookupProvider({"searches": {"Jane Doe": [["link-1"]]}})
    runtime = runtime_factory(provider)

    with pytest.raises(InsufficientCreditsError) as error:
        runtime.service.submit(
            SubmitSearch(
                owner_id=OWNER,
                names=("Jane Doe", "John Roe"),
                policy=BillingPolicyName.POSTPAID_DEDUCT,
            ),
        )

    assert error.value.required == Decimal("0.6")
    assert error.value.task_id is not None
    task = runtime.service.get_status(error.value.task_id)
    assert task.status == TaskStatus.INSUFFICIENT_CREDITS
    assert task.billing_note is not None
    assert provider.search_calls == []
    assert runtime.ledger.list_entries(OWNER) == []


def test_prepaid_rejection_freezes_nothing(runtime_factory) -> None:
    provider = FixtureLookupProvider({"searches": {"Jane Doe": [["link-1"]]}})
    runtime = _funded(runtime_factory(provider), "1.0")

    with pytest.raises(InsufficientCreditsError):
        runtime.service.submit(SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert provider.search_calls == []
    assert runtime.ledger.get_account(OWNER).frozen_balance == Decimal("0.0")
    assert runtime.service.list_history(OWNER).items[0].status == TaskStatus.INSUFFICIENT_CREDITS


def test_unavailable_provider_rejects_before_creating_task(runtime_factory) -> None:
    runtime = _funded(runtime_factory(FixtureLookupProvider({"available": False})))

    with pytest.raises(ProviderUnavailableError):
        runtime.service.submit(SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert runtime.service.list_history(OWNER).total == 0


def test_disabled_lookup_rejects_submission(runtime_factory) -> None:
    runtime = _funded(runtime_factory(FixtureLookupProvider({})))
    runtime.config_provider.set_value("enabled", "false")

    with pytest.raises(ProviderUnavailableError):
        runtime.service.submit(SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))


def test_cancellation_stops_at_next_wave_boundary(runtime_factory) -> None:
    names = tuple(f"Name {index}" for index in range(1, 6))
    provider = _BlockingProvider(
        {
            "searches": {name: [[f"link-{name}"]] for name in names},
            "details": {f"link-{name}": _detail(60) for name in names},
        },
        blocked_name="Name 2",
    )
    runtime = _funded(runtime_factory(provider, wave_size=1))

    submitted = runtime.service.submit(SubmitSearch(owner_id=OWNER, names=names))
    assert provider.blocked.wait(timeout=10)
    flagged = runtime.service.cancel(submitted.task_id, owner_id=OWNER)
    provider.release.set()
    assert runtime.executor.wait_idle(timeout=30)

    task = runtime.service.get_status(submitted.task_id)
    assert flagged.cancel_requested is True
    assert task.status == TaskStatus.CANCELLED
    assert task.search_requests_used == 2
    assert task.completed_sub_tasks == 2
    assert task.detail_requests_used == 0
    assert task.credits_used == Decimal("0.6")
    assert [call[0] for call in provider.search_calls] == ["Name 1", "Name 2"]
    assert provider.detail_calls == []
    assert runtime.ledger.get_account(OWNER).available_balance == Decimal("99.4")
    assert runtime.ledger.get_account(OWNER).frozen_balance == Decimal("0.0")


def test_failed_units_do_not_abort_the_batch(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {
            "searches": {"Jane Doe": [["link-1", "link-2"]]},
            "details": {"link-1": _detail(60)},
            "failing_searches": ["Broken Name"],
            "failing_details": ["link-2"],
        },
    )
    runtime = _funded(runtime_factory(provider))

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe", "Broken Name")))

    assert task.status == TaskStatus.COMPLETED
    assert task.total_results == 1
    assert task.search_requests_used == 1
    assert task.detail_requests_used == 2
    assert task.credits_used == Decimal("0.9")
    messages = _messages(task)
    assert "[2/2] Broken Name search failed" in messages
    assert "Detail fetch failed for link-2" in messages


def test_duplicate_candidates_are_fetched_once(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {
            "searches": {
                "Jane Doe|Austin, TX": [["link-1"]],
                "Jane Doe|Dallas, TX": [["link-1", "link-2"]],
            },
            "details": {"link-1": _detail(60), "link-2": _detail(61)},
        },
    )
    runtime = _funded(runtime_factory(provider))

    task = _run(
        runtime,
        SubmitSearch(
            owner_id=OWNER,
            names=("Jane Doe",),
            mode=SearchMode.NAME_LOCATION,
            locations=("Austin, TX", "Dallas, TX"),
        ),
    )

    results = runtime.service.get_results(task.task_id)
    assert sorted(provider.detail_calls) == ["link-1", "link-2"]
    assert [(record.detail_link, record.search_location) for record in results.items] == [
        ("link-1", "Austin, TX"),
        ("link-2", "Dallas, TX"),
    ]


def test_search_pages_follow_has_more_up_to_limit(runtime_factory) -> None:
    provider = FixtureLookupProvider({"searches": {"Jane Doe": [["link-1"], ["link-2"], ["x"]]}})
    runtime = _funded(runtime_factory(provider, max_pages=2, max_details_per_subtask=0))

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert [call[2] for call in provider.search_calls] == [1, 2]
    assert task.search_requests_used == 2
    assert task.detail_requests_used == 0
    assert "Detail budget allows 0 fetches; 2 candidates skipped" in _messages(task)


def test_progress_reports_never_decrease(runtime_factory, monkeypatch) -> None:
    names = tuple(f"Name {index}" for index in range(1, 6))
    provider = FixtureLookupProvider(
        {
            "searches": {name: [[f"link-{name}-a", f"link-{name}-b"]] for name in names},
            "details": {f"link-{name}-{suffix}": _detail(60) for name in names for suffix in "ab"},
        },
    )
    runtime = _funded(runtime_factory(provider, wave_size=2))
    reported: list[int] = []
    original = runtime.repository.update_progress

    def _spy(task_id, update):
        if update.progress_percent is not None:
            reported.append(update.progress_percent)
        return original(task_id, update)

    monkeypatch.setattr(runtime.repository, "update_progress", _spy)

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=names))

    assert reported == sorted(reported)
    assert reported[0] == 20
    assert max(reported) == 95
    assert task.progress_percent == 100
    assert task.total_results == 10


def test_postpaid_shortfall_still_completes_with_results(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {"searches": {"Jane Doe": [["link-1"]]}, "details": {"link-1": _detail(60)}},
    )
    runtime = _funded(runtime_factory(provider), "0.3")

    task = _run(
        runtime,
        SubmitSearch(
            owner_id=OWNER,
            names=("Jane Doe",),
            policy=BillingPolicyName.POSTPAID_DEDUCT,
        ),
    )

    assert task.status == TaskStatus.COMPLETED
    assert task.billing_status == BillingOutcome.SHORTFALL
    assert task.billing_note is not None
    assert task.credits_used == Decimal("0.0")
    assert task.total_results == 1
    assert runtime.ledger.get_account(OWNER).available_balance == Decimal("0.3")


def test_unexpected_error_fails_task_without_settlement(runtime_factory, monkeypatch) -> None:
    provider = FixtureLookupProvider({"searches": {"Jane Doe": [["link-1"]]}})
    runtime = _funded(runtime_factory(provider, max_details_per_subtask=1))

    def _offline(keys):
        raise RuntimeError("cache offline")

    monkeypatch.setattr(runtime.cache, "get_many", _offline)

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert task.status == TaskStatus.FAILED
    assert task.error_message == "cache offline"
    entries = runtime.ledger.list_entries(OWNER, task_id=task.task_id)
    assert [entry.entry_type for entry in entries] == [LedgerEntryType.FREEZE]


def test_free_prepaid_task_runs_without_freezing(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {"searches": {"Jane Doe": [["link-1"]]}, "details": {"link-1": _detail(60)}},
    )
    runtime = runtime_factory(provider)
    runtime.config_provider.set_value("search_cost", "0")
    runtime.config_provider.set_value("detail_cost", "0")

    task = _run(runtime, SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    assert task.status == TaskStatus.COMPLETED
    assert task.billing_policy == BillingPolicyName.PREPAID_FREEZE_SETTLE
    assert task.billing_status == BillingOutcome.NOT_BILLED
    assert task.frozen_amount == Decimal("0.0")
    assert task.credits_used == Decimal("0.0")
    assert task.total_results == 1
    assert runtime.ledger.list_entries(OWNER) == []


def test_admission_error_marks_task_failed(runtime_factory, monkeypatch) -> None:
    provider = FixtureLookupProvider({"searches": {"Jane Doe": [["link-1"]]}})
    runtime = _funded(runtime_factory(provider))

    def _broken_freeze(*args, **kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(runtime.ledger, "freeze", _broken_freeze)

    with pytest.raises(RuntimeError, match="ledger offline"):
        runtime.service.submit(SubmitSearch(owner_id=OWNER, names=("Jane Doe",)))

    task = runtime.service.list_history(OWNER).items[0]
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Admission failed: ledger offline"
    assert provider.search_calls == []


def test_min_age_above_default_window_is_accepted(runtime_factory) -> None:
    provider = FixtureLookupProvider(
        {
            "searches": {"Jane Doe": [["link-1", "link-2"]]},
            "details": {"link-1": _detail(90), "link-2": _detail(70)},
        },
    )
    runtime = _funded(runtime_factory(provider))

    task = _run(
        runtime,
        SubmitSearch(owner_id=OWNER, names=("Jane Doe",), filters=FilterConfig(min_age=85)),
    )

    assert task.status == TaskStatus.COMPLETED
    assert (task.filters.min_age, task.filters.max_age) == (85, 85)
    assert task.filtered_out == 2
    assert task.total_results == 0
