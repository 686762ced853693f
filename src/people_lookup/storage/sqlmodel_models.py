"""SQLModel ORM tables for the lookup engine."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

# Credit amounts are stored as integer multiples of the billable unit (0.1 credit).


class CreditAccount(SQLModel, table=True):
    __tablename__ = "credit_accounts"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("available_units >= 0", name="ck_credit_accounts_available"),
        CheckConstraint("frozen_units >= 0", name="ck_credit_accounts_frozen"),
    )

    account_id: str = Field(primary_key=True)
    available_units: int = 0
    frozen_units: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditLedgerEntry(SQLModel, table=True):
    __tablename__ = "credit_ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_credit_ledger_entries_account_time", "account_id", "created_at"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    account_id: str = Field(
        sa_column=Column(
            String,
            ForeignKey("credit_accounts.account_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    amount_units: int
    balance_after_units: int
    entry_type: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    related_task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SearchTask(SQLModel, table=True):
    __tablename__ = "search_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_search_tasks_owner_created", "owner_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(sa_column=Column(Text, nullable=False, unique=True, index=True))
    owner_id: str = Field(index=True)
    mode: str
    queries_json: str = Field(sa_column=Column(Text, nullable=False))
    filters_json: str = Field(sa_column=Column(Text, nullable=False))
    billing_policy: str
    status: str = Field(index=True)
    progress_percent: int = 0
    total_sub_tasks: int = 0
    completed_sub_tasks: int = 0
    search_requests_used: int = 0
    detail_requests_used: int = 0
    cache_hits: int = 0
    total_results: int = 0
    filtered_out: int = 0
    credits_used_units: int = 0
    frozen_units: int = 0
    billing_status: str | None = None
    billing_note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    logs_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SearchResult(SQLModel, table=True):
    __tablename__ = "search_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_row_id", "position", name="uq_search_results_task_position"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_row_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("search_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    position: int
    detail_link: str = Field(index=True)
    sub_task_index: int
    search_name: str
    search_location: str | None = None
    name: str
    age: int | None = None
    phone: str | None = None
    from_cache: bool = False
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DetailCacheEntry(SQLModel, table=True):
    __tablename__ = "detail_cache"  # type: ignore[bad-override]

    detail_link: str = Field(primary_key=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class SystemConfig(SQLModel, table=True):
    __tablename__ = "system_configs"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
