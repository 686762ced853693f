"""Durable search task and result storage backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, delete, select

from people_lookup.lookup.errors import TaskNotFoundError, TaskStateError
from people_lookup.lookup.models import (
    BillingOutcome,
    BillingPolicyName,
    DetailRecord,
    FilterConfig,
    ResultPage,
    SearchMode,
    SearchQuery,
    SearchRequest,
    SearchTaskView,
    TaskCounters,
    TaskLogEntry,
    TaskPage,
    TaskProgressUpdate,
    TaskStatus,
)
from people_lookup.lookup.pricing import from_units, to_units
from people_lookup.storage.alembic_runner import upgrade_head
from people_lookup.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from people_lookup.storage.sqlmodel_models import SearchResult, SearchTask

logger = logging.getLogger(__name__)

_RESULTS_ITER_CHUNK = 200


class SearchTaskRepository:
    """Task persistence facade.

    Progress writes are tiered: a full write is retried on transient SQLite
    errors, then a reduced write without the log is attempted so status and
    counters survive even when the log does not.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        log_cap: int = 100,
        max_write_retries: int = 3,
        retry_backoff_seconds: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self.log_cap = log_cap
        self.max_write_retries = max_write_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def create(
        self,
        *,
        owner_id: str,
        request: SearchRequest,
        billing_policy: BillingPolicyName,
    ) -> SearchTaskView:
        """Create a pending task with a fresh external identifier."""

        now = to_db_datetime(utc_now())
        queries = request.queries()
        with Session(self.engine) as session:
            row = SearchTask(
                task_id=secrets.token_hex(16),
                owner_id=owner_id,
                mode=request.mode.value,
                queries_json=json.dumps(
                    [{"name": query.name, "location": query.location} for query in queries],
                    ensure_ascii=False,
                ),
                filters_json=json.dumps(request.filters.to_mapping(), sort_keys=True),
                billing_policy=billing_policy.value,
                status=TaskStatus.PENDING.value,
                total_sub_tasks=len(queries),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def mark_running(
        self,
        task_id: str,
        *,
        frozen_amount: Decimal,
        logs: Sequence[TaskLogEntry] = (),
    ) -> None:
        now = to_db_datetime(utc_now())
        rowcount = self._write_progress(
            task_id,
            {
                "status": TaskStatus.RUNNING.value,
                "started_at": now,
                "frozen_units": to_units(frozen_amount),
                "logs_json": self._encode_logs(logs),
            },
            (TaskStatus.PENDING,),
        )
        if rowcount != 1:
            raise TaskStateError(f"Task {task_id} is no longer pending.")

    def mark_insufficient_credits(
        self,
        task_id: str,
        *,
        note: str,
        logs: Sequence[TaskLogEntry] = (),
    ) -> None:
        now = to_db_datetime(utc_now())
        rowcount = self._write_progress(
            task_id,
            {
                "status": TaskStatus.INSUFFICIENT_CREDITS.value,
                "completed_at": now,
                "billing_status": BillingOutcome.NOT_BILLED.value,
                "billing_note": note,
                "logs_json": self._encode_logs(logs),
            },
            (TaskStatus.PENDING,),
        )
        if rowcount != 1:
            raise TaskStateError(f"Task {task_id} is no longer pending.")

    def update_progress(self, task_id: str, update: TaskProgressUpdate) -> bool:
        """Merge provided fields into a running task.

        Returns False when the write had to drop the log to go through.
        """

        values: dict[str, Any] = {}
        if update.progress_percent is not None:
            values["progress_percent"] = func.max(
                col(SearchTask.progress_percent),
                max(0, min(100, update.progress_percent)),
            )
        for name in (
            "completed_sub_tasks",
            "search_requests_used",
            "detail_requests_used",
            "cache_hits",
        ):
            value = getattr(update, name)
            if value is not None:
                values[name] = value
        if update.logs is not None:
            values["logs_json"] = self._encode_logs(update.logs)
        if not values:
            return True
        return self._tiered_write(task_id, values)

    def complete(
        self,
        task_id: str,
        counters: TaskCounters,
        *,
        logs: Sequence[TaskLogEntry] | None = None,
    ) -> bool:
        values = _counter_values(counters)
        values["progress_percent"] = 100
        return self._finish(task_id, TaskStatus.COMPLETED, values, logs)

    def fail(
        self,
        task_id: str,
        error_message: str,
        *,
        logs: Sequence[TaskLogEntry] | None = None,
    ) -> bool:
        return self._finish(task_id, TaskStatus.FAILED, {"error_message": error_message}, logs)

    def finalize_cancelled(
        self,
        task_id: str,
        counters: TaskCounters,
        *,
        logs: Sequence[TaskLogEntry] | None = None,
    ) -> bool:
        return self._finish(task_id, TaskStatus.CANCELLED, _counter_values(counters), logs)

    def request_cancel(self, task_id: str, *, owner_id: str | None = None) -> SearchTaskView:
        """Cancel a pending task now, or flag a running one for the next wave boundary."""

        row = self._get_row(task_id, owner_id=owner_id)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SearchTask)
                .where(
                    col(SearchTask.task_id) == row.task_id,
                    col(SearchTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    cancel_requested_at=now,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                result = session.exec(
                    sa_update(SearchTask)
                    .where(
                        col(SearchTask.task_id) == row.task_id,
                        col(SearchTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        cancel_requested_at=func.coalesce(
                            col(SearchTask.cancel_requested_at),
                            now,
                        ),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False),
                )
            if result.rowcount != 1:
                session.rollback()
                current = self.get(task_id)
                raise TaskStateError(
                    f"Task {task_id} is already {current.status.value} and cannot be cancelled.",
                )
            session.commit()
        return self.get(task_id)

    def is_cancel_requested(self, task_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(SearchTask.status, SearchTask.cancel_requested_at).where(
                    col(SearchTask.task_id) == task_id,
                ),
            ).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        status, cancel_requested_at = row
        return cancel_requested_at is not None or status == TaskStatus.CANCELLED.value

    def get(self, task_id: str, *, owner_id: str | None = None) -> SearchTaskView:
        return _to_task_view(self._get_row(task_id, owner_id=owner_id))

    def list_by_owner(self, owner_id: str, *, page: int = 1, page_size: int = 20) -> TaskPage:
        """Owner's tasks, newest first."""

        page = max(1, page)
        with Session(self.engine) as session:
            total = session.exec(
                select(func.count())
                .select_from(SearchTask)
                .where(col(SearchTask.owner_id) == owner_id),
            ).one()
            rows = session.exec(
                select(SearchTask)
                .where(col(SearchTask.owner_id) == owner_id)
                .order_by(col(SearchTask.created_at).desc(), col(SearchTask.id).desc())
                .offset((page - 1) * page_size)
                .limit(page_size),
            ).all()
        return TaskPage(
            items=[_to_task_view(row) for row in rows],
            page=page,
            page_size=page_size,
            total=int(total),
        )

    def save_results(self, task_id: str, records: Sequence[DetailRecord]) -> int:
        """Replace the stored result list of a task, keeping the given order."""

        row = self._get_row(task_id)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            session.exec(delete(SearchResult).where(col(SearchResult.task_row_id) == row.id))
            for position, record in enumerate(records):
                session.add(
                    SearchResult(
                        task_row_id=row.id,
                        position=position,
                        detail_link=record.detail_link,
                        sub_task_index=record.sub_task_index,
                        search_name=record.search_name,
                        search_location=record.search_location,
                        name=record.name,
                        age=record.age,
                        phone=record.phone,
                        from_cache=record.from_cache,
                        payload_json=json.dumps(record.to_payload(), ensure_ascii=False),
                        created_at=now,
                    ),
                )
            session.commit()
        return len(records)

    def get_results(
        self,
        task_id: str,
        *,
        page: int = 1,
        page_size: int = 50,
        owner_id: str | None = None,
    ) -> ResultPage:
        row = self._get_row(task_id, owner_id=owner_id)
        page = max(1, page)
        with Session(self.engine) as session:
            total = session.exec(
                select(func.count())
                .select_from(SearchResult)
                .where(col(SearchResult.task_row_id) == row.id),
            ).one()
            results = session.exec(
                select(SearchResult)
                .where(col(SearchResult.task_row_id) == row.id)
                .order_by(col(SearchResult.position).asc())
                .offset((page - 1) * page_size)
                .limit(page_size),
            ).all()
        return ResultPage(
            items=[_to_detail_record(result) for result in results],
            page=page,
            page_size=page_size,
            total=int(total),
        )

    def iter_results(self, task_id: str, *, owner_id: str | None = None) -> Iterator[DetailRecord]:
        row = self._get_row(task_id, owner_id=owner_id)
        position = -1
        while True:
            with Session(self.engine) as session:
                chunk = session.exec(
                    select(SearchResult)
                    .where(
                        col(SearchResult.task_row_id) == row.id,
                        col(SearchResult.position) > position,
                    )
                    .order_by(col(SearchResult.position).asc())
                    .limit(_RESULTS_ITER_CHUNK),
                ).all()
            if not chunk:
                return
            for result in chunk:
                yield _to_detail_record(result)
            position = chunk[-1].position

    def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        values: dict[str, Any],
        logs: Sequence[TaskLogEntry] | None,
    ) -> bool:
        payload = dict(values)
        payload["status"] = status.value
        payload["completed_at"] = to_db_datetime(utc_now())
        if logs is not None:
            payload["logs_json"] = self._encode_logs(logs)
        from_statuses = (TaskStatus.RUNNING,)
        if status == TaskStatus.FAILED:
            from_statuses = (TaskStatus.PENDING, TaskStatus.RUNNING)
        self._tiered_write(task_id, payload, from_statuses=from_statuses)
        current = self.get(task_id)
        if current.status != status:
            logger.warning(
                "Task %s stayed %s; %s transition skipped",
                task_id,
                current.status.value,
                status.value,
            )
            return False
        return True

    def _tiered_write(
        self,
        task_id: str,
        values: dict[str, Any],
        *,
        from_statuses: Sequence[TaskStatus] = (TaskStatus.RUNNING,),
    ) -> bool:
        try:
            self._write_with_retries(task_id, values, from_statuses)
            return True
        except OperationalError as error:
            if "logs_json" not in values:
                raise
            logger.warning(
                "Write for task %s failed after %d attempts (%s); retrying without log",
                task_id,
                self.max_write_retries,
                error,
            )
        reduced = {key: value for key, value in values.items() if key != "logs_json"}
        self._write_with_retries(task_id, reduced, from_statuses)
        return False

    def _write_with_retries(
        self,
        task_id: str,
        values: dict[str, Any],
        from_statuses: Sequence[TaskStatus],
    ) -> None:
        attempts = max(1, self.max_write_retries)
        for attempt in range(attempts):
            try:
                self._write_progress(task_id, values, from_statuses)
                return
            except OperationalError:
                if attempt == attempts - 1:
                    raise
                delay = self.retry_backoff_seconds * (2**attempt)
                logger.debug("Transient write error for task %s; retry in %.2fs", task_id, delay)
                self._sleep(delay)

    def _write_progress(
        self,
        task_id: str,
        values: dict[str, Any],
        from_statuses: Sequence[TaskStatus] = (TaskStatus.RUNNING,),
    ) -> int:
        """Single guarded UPDATE; the seam the retry tiers are built on."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SearchTask)
                .where(
                    col(SearchTask.task_id) == task_id,
                    col(SearchTask.status).in_([status.value for status in from_statuses]),
                )
                .values(**values, updated_at=to_db_datetime(utc_now()))
                .execution_options(synchronize_session=False),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _get_row(self, task_id: str, *, owner_id: str | None = None) -> SearchTask:
        with Session(self.engine) as session:
            row = session.exec(
                select(SearchTask).where(col(SearchTask.task_id) == task_id),
            ).one_or_none()
        if row is None or (owner_id is not None and row.owner_id != owner_id):
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _encode_logs(self, logs: Sequence[TaskLogEntry]) -> str:
        kept = list(logs)[-self.log_cap :] if self.log_cap > 0 else []
        return json.dumps(
            [
                {"timestamp": entry.timestamp.isoformat(), "message": entry.message}
                for entry in kept
            ],
            ensure_ascii=False,
        )


def _counter_values(counters: TaskCounters) -> dict[str, Any]:
    return {
        "search_requests_used": counters.search_requests_used,
        "detail_requests_used": counters.detail_requests_used,
        "cache_hits": counters.cache_hits,
        "total_results": counters.total_results,
        "filtered_out": counters.filtered_out,
        "completed_sub_tasks": counters.completed_sub_tasks,
        "credits_used_units": to_units(counters.credits_used),
        "billing_status": counters.billing_status.value if counters.billing_status else None,
        "billing_note": counters.billing_note,
    }


def _decode_logs(raw: str) -> list[TaskLogEntry]:
    entries = json.loads(raw or "[]")
    return [
        TaskLogEntry(
            timestamp=to_utc_aware_datetime(datetime.fromisoformat(entry["timestamp"])),
            message=str(entry["message"]),
        )
        for entry in entries
    ]


def _optional_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware_datetime(value)


def _to_task_view(row: SearchTask) -> SearchTaskView:
    queries = [
        SearchQuery(name=item["name"], location=item.get("location"))
        for item in json.loads(row.queries_json)
    ]
    return SearchTaskView(
        task_id=row.task_id,
        owner_id=row.owner_id,
        mode=SearchMode(row.mode),
        queries=queries,
        filters=FilterConfig.from_mapping(json.loads(row.filters_json)),
        billing_policy=BillingPolicyName(row.billing_policy),
        status=TaskStatus(row.status),
        progress_percent=row.progress_percent,
        total_sub_tasks=row.total_sub_tasks,
        completed_sub_tasks=row.completed_sub_tasks,
        search_requests_used=row.search_requests_used,
        detail_requests_used=row.detail_requests_used,
        cache_hits=row.cache_hits,
        total_results=row.total_results,
        filtered_out=row.filtered_out,
        credits_used=from_units(row.credits_used_units),
        frozen_amount=from_units(row.frozen_units),
        billing_status=BillingOutcome(row.billing_status) if row.billing_status else None,
        billing_note=row.billing_note,
        logs=_decode_logs(row.logs_json),
        error_message=row.error_message,
        cancel_requested=row.cancel_requested_at is not None,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
    )


def _to_detail_record(row: SearchResult) -> DetailRecord:
    return replace(
        DetailRecord.from_payload(json.loads(row.payload_json)),
        sub_task_index=row.sub_task_index,
        search_name=row.search_name,
        search_location=row.search_location,
        from_cache=row.from_cache,
    )
