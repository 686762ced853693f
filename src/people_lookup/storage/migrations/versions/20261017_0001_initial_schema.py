"""Initial lookup schema: credits, tasks, results, detail cache, runtime config."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("available_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frozen_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("available_units >= 0", name="ck_credit_accounts_available"),
        sa.CheckConstraint("frozen_units >= 0", name="ck_credit_accounts_frozen"),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "credit_ledger_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("amount_units", sa.Integer(), nullable=False),
        sa.Column("balance_after_units", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("related_task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["account_id"],
            ["credit_accounts.account_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "idx_credit_ledger_entries_account_time",
        "credit_ledger_entries",
        ["account_id", "created_at"],
    )
    op.create_index(
        "ix_credit_ledger_entries_entry_type",
        "credit_ledger_entries",
        ["entry_type"],
    )
    op.create_index(
        "ix_credit_ledger_entries_related_task_id",
        "credit_ledger_entries",
        ["related_task_id"],
    )

    op.create_table(
        "search_tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("queries_json", sa.Text(), nullable=False),
        sa.Column("filters_json", sa.Text(), nullable=False),
        sa.Column("billing_policy", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_sub_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_sub_tasks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("search_requests_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("detail_requests_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cache_hits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_results", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("filtered_out", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frozen_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_status", sa.String(), nullable=True),
        sa.Column("billing_note", sa.Text(), nullable=True),
        sa.Column("logs_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_search_tasks_task_id", "search_tasks", ["task_id"], unique=True)
    op.create_index("ix_search_tasks_owner_id", "search_tasks", ["owner_id"])
    op.create_index("ix_search_tasks_status", "search_tasks", ["status"])
    op.create_index(
        "idx_search_tasks_owner_created",
        "search_tasks",
        ["owner_id", "created_at"],
    )

    op.create_table(
        "search_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_row_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("detail_link", sa.String(), nullable=False),
        sa.Column("sub_task_index", sa.Integer(), nullable=False),
        sa.Column("search_name", sa.String(), nullable=False),
        sa.Column("search_location", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("from_cache", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_row_id"], ["search_tasks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_row_id", "position", name="uq_search_results_task_position"),
    )
    op.create_index("ix_search_results_task_row_id", "search_results", ["task_row_id"])
    op.create_index("ix_search_results_detail_link", "search_results", ["detail_link"])

    op.create_table(
        "detail_cache",
        sa.Column("detail_link", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("detail_link"),
    )
    op.create_index("ix_detail_cache_expires_at", "detail_cache", ["expires_at"])

    op.create_table(
        "system_configs",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("system_configs")
    op.drop_index("ix_detail_cache_expires_at", table_name="detail_cache")
    op.drop_table("detail_cache")
    op.drop_index("ix_search_results_detail_link", table_name="search_results")
    op.drop_index("ix_search_results_task_row_id", table_name="search_results")
    op.drop_table("search_results")
    op.drop_index("idx_search_tasks_owner_created", table_name="search_tasks")
    op.drop_index("ix_search_tasks_status", table_name="search_tasks")
    op.drop_index("ix_search_tasks_owner_id", table_name="search_tasks")
    op.drop_index("ix_search_tasks_task_id", table_name="search_tasks")
    op.drop_table("search_tasks")
    op.drop_index("ix_credit_ledger_entries_related_task_id", table_name="credit_ledger_entries")
    op.drop_index("ix_credit_ledger_entries_entry_type", table_name="credit_ledger_entries")
    op.drop_index("idx_credit_ledger_entries_account_time", table_name="credit_ledger_entries")
    op.drop_table("credit_ledger_entries")
    op.drop_table("credit_accounts")
