"""Per-account credit ledger with an append-only entry log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from people_lookup.lookup.errors import (
    InsufficientBalanceError,
    InsufficientCreditsError,
    LedgerStateError,
)
from people_lookup.lookup.models import LedgerAccountView, LedgerEntryType, LedgerEntryView
from people_lookup.lookup.pricing import from_units, to_units
from people_lookup.storage.alembic_runner import upgrade_head
from people_lookup.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from people_lookup.storage.sqlmodel_models import CreditAccount, CreditLedgerEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FreezeResult:
    amount: Decimal
    available_balance: Decimal
    frozen_balance: Decimal
    entry: LedgerEntryView


@dataclass(slots=True)
class SettlementResult:
    frozen_amount: Decimal
    actual_cost: Decimal
    refund: Decimal
    available_balance: Decimal
    entry: LedgerEntryView


@dataclass(slots=True)
class _Mutation:
    account_id: str
    available_delta: int
    frozen_delta: int
    entry_amount: int
    entry_type: LedgerEntryType
    description: str
    task_id: str | None
    required_available: int = 0
    required_frozen: int = 0


class CreditLedger:
    """Balance mutations as single conditional updates.

    Each mutation runs ``UPDATE ... WHERE balance >= amount`` and inserts one
    ledger entry in the same transaction, so the check and the write cannot be
    interleaved with another writer on the same account.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def get_account(self, account_id: str) -> LedgerAccountView:
        with Session(self.engine) as session:
            self._ensure_account(session, account_id)
            session.commit()
            return _to_account_view(self._load_account(session, account_id))

    def credit(
        self,
        account_id: str,
        amount: Decimal,
        description: str = "Credit",
        task_id: str | None = None,
    ) -> LedgerEntryView:
        units = _positive_units(amount, round_up=False)
        entry = self._apply(
            _Mutation(
                account_id=account_id,
                available_delta=units,
                frozen_delta=0,
                entry_amount=units,
                entry_type=LedgerEntryType.CREDIT,
                description=description,
                task_id=task_id,
            ),
        )
        if entry is None:
            raise LedgerStateError(f"Could not credit account {account_id!r}.")
        return entry

    def deduct(
        self,
        account_id: str,
        amount: Decimal,
        description: str,
        task_id: str | None = None,
    ) -> LedgerEntryView:
        """Remove ``amount`` from the available balance or raise InsufficientBalanceError."""

        units = _positive_units(amount)
        entry = self._apply(
            _Mutation(
                account_id=account_id,
                available_delta=-units,
                frozen_delta=0,
                entry_amount=-units,
                entry_type=LedgerEntryType.DEDUCT,
                description=description,
                task_id=task_id,
                required_available=units,
            ),
        )
        if entry is None:
            raise InsufficientBalanceError(
                amount=from_units(units),
                available=self.get_account(account_id).available_balance,
            )
        return entry

    def freeze(self, account_id: str, amount: Decimal, task_id: str) -> FreezeResult:
        """Move ``amount`` from available to frozen or raise InsufficientCreditsError."""

        units = _positive_units(amount)
        entry = self._apply(
            _Mutation(
                account_id=account_id,
                available_delta=-units,
                frozen_delta=units,
                entry_amount=-units,
                entry_type=LedgerEntryType.FREEZE,
                description=f"Freeze {from_units(units)} for task {task_id}",
                task_id=task_id,
                required_available=units,
            ),
        )
        account = self.get_account(account_id)
        if entry is None:
            raise InsufficientCreditsError(
                required=from_units(units),
                available=account.available_balance,
                task_id=task_id,
            )
        return FreezeResult(
            amount=from_units(units),
            available_balance=entry.balance_after,
            frozen_balance=account.frozen_balance,
            entry=entry,
        )

    def settle(
        self,
        account_id: str,
        frozen_amount: Decimal,
        actual_cost: Decimal,
        task_id: str,
    ) -> SettlementResult:
        """Release a freeze: keep ``actual_cost`` as spend and refund the rest."""

        frozen_units = to_units(frozen_amount)
        actual_units = to_units(actual_cost)
        if actual_units < 0:
            raise ValueError("Actual cost must be >= 0.")
        if actual_units > frozen_units:
            logger.warning(
                "Actual cost %s exceeds frozen amount %s for task %s; clamping",
                from_units(actual_units),
                from_units(frozen_units),
                task_id,
            )
            actual_units = frozen_units
        refund_units = frozen_units - actual_units
        if refund_units > 0:
            entry_type = LedgerEntryType.SETTLE_REFUND
        else:
            entry_type = LedgerEntryType.SETTLE
        entry = self._apply(
            _Mutation(
                account_id=account_id,
                available_delta=refund_units,
                frozen_delta=-frozen_units,
                entry_amount=refund_units,
                entry_type=entry_type,
                description=(
                    f"Settle task {task_id}: cost {from_units(actual_units)}, "
                    f"refund {from_units(refund_units)}"
                ),
                task_id=task_id,
                required_frozen=frozen_units,
            ),
        )
        if entry is None:
            raise LedgerStateError(
                f"Frozen balance of account {account_id!r} is below {from_units(frozen_units)}.",
            )
        return SettlementResult(
            frozen_amount=from_units(frozen_units),
            actual_cost=from_units(actual_units),
            refund=from_units(refund_units),
            available_balance=entry.balance_after,
            entry=entry,
        )

    def list_entries(
        self,
        account_id: str,
        *,
        task_id: str | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntryView]:
        """Entries oldest first; with ``limit`` only the most recent ones."""

        with Session(self.engine) as session:
            statement = select(CreditLedgerEntry).where(
                col(CreditLedgerEntry.account_id) == account_id,
            )
            if task_id is not None:
                statement = statement.where(col(CreditLedgerEntry.related_task_id) == task_id)
            statement = statement.order_by(col(CreditLedgerEntry.entry_id).desc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in reversed(rows)]

    def replay_balance(self, account_id: str) -> Decimal:
        """Available balance reconstructed from the entry log."""

        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CreditLedgerEntry.amount_units), 0)).where(
                    col(CreditLedgerEntry.account_id) == account_id,
                ),
            ).one()
        return from_units(int(total))

    def _apply(self, mutation: _Mutation) -> LedgerEntryView | None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._ensure_account(session, mutation.account_id)
            result = session.exec(
                sa_update(CreditAccount)
                .where(
                    col(CreditAccount.account_id) == mutation.account_id,
                    col(CreditAccount.available_units) >= mutation.required_available,
                    col(CreditAccount.frozen_units) >= mutation.required_frozen,
                )
                .values(
                    available_units=col(CreditAccount.available_units) + mutation.available_delta,
                    frozen_units=col(CreditAccount.frozen_units) + mutation.frozen_delta,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            account = self._load_account(session, mutation.account_id)
            entry = CreditLedgerEntry(
                account_id=mutation.account_id,
                amount_units=mutation.entry_amount,
                balance_after_units=account.available_units,
                entry_type=mutation.entry_type.value,
                description=mutation.description,
                related_task_id=mutation.task_id,
                created_at=now,
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return _to_entry_view(entry)

    @staticmethod
    def _ensure_account(session: Session, account_id: str) -> None:
        now = to_db_datetime(utc_now())
        session.exec(
            sqlite_insert(CreditAccount)
            .values(
                account_id=account_id,
                available_units=0,
                frozen_units=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["account_id"]),
        )

    @staticmethod
    def _load_account(session: Session, account_id: str) -> CreditAccount:
        account = session.exec(
            select(CreditAccount).where(CreditAccount.account_id == account_id),
        ).one()
        session.refresh(account)
        return account


def _positive_units(amount: Decimal, *, round_up: bool = True) -> int:
    units = to_units(amount, round_up=round_up)
    if units <= 0:
        raise ValueError(f"Amount must be positive, got {amount}.")
    return units


def _to_account_view(row: CreditAccount) -> LedgerAccountView:
    return LedgerAccountView(
        account_id=row.account_id,
        available_balance=from_units(row.available_units),
        frozen_balance=from_units(row.frozen_units),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_entry_view(row: CreditLedgerEntry) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.entry_id or 0,
        account_id=row.account_id,
        amount=from_units(row.amount_units),
        balance_after=from_units(row.balance_after_units),
        entry_type=LedgerEntryType(row.entry_type),
        description=row.description,
        related_task_id=row.related_task_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
