"""Admission and settlement strategies over the credit ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from people_lookup.lookup.errors import InsufficientBalanceError, InsufficientCreditsError
from people_lookup.lookup.ledger import CreditLedger
from people_lookup.lookup.models import BillingOutcome, BillingPolicyName
from people_lookup.lookup.pricing import CostEstimate

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.0")


@dataclass(slots=True)
class AdmissionResult:
    policy: BillingPolicyName
    estimate: CostEstimate
    frozen_amount: Decimal
    available_balance: Decimal


@dataclass(slots=True)
class SettlementOutcome:
    status: BillingOutcome
    cost: Decimal
    refund: Decimal = _ZERO
    note: str | None = None


class BillingPolicy(Protocol):
    """One named strategy: authorize before execution, settle once after it."""

    name: BillingPolicyName

    def admit(self, account_id: str, task_id: str, estimate: CostEstimate) -> AdmissionResult:
        """Authorize a task or raise InsufficientCreditsError."""
        raise NotImplementedError

    def settle(
        self,
        account_id: str,
        task_id: str,
        admission: AdmissionResult,
        metered_cost: Decimal,
    ) -> SettlementOutcome:
        """Bill the metered cost. Called at most once per task."""
        raise NotImplementedError


class PostpaidDeductPolicy:
    """Check the minimum up front; deduct the exact metered cost afterwards.

    A deduction that fails at settlement time does not discard collected
    results: the outcome is ``shortfall`` and the task still completes.
    """

    name = BillingPolicyName.POSTPAID_DEDUCT

    def __init__(self, ledger: CreditLedger) -> None:
        self.ledger = ledger

    def admit(self, account_id: str, task_id: str, estimate: CostEstimate) -> AdmissionResult:
        available = self.ledger.get_account(account_id).available_balance
        if available < estimate.minimum:
            raise InsufficientCreditsError(
                required=estimate.minimum,
                available=available,
                task_id=task_id,
            )
        return AdmissionResult(
            policy=self.name,
            estimate=estimate,
            frozen_amount=_ZERO,
            available_balance=available,
        )

    def settle(
        self,
        account_id: str,
        task_id: str,
        admission: AdmissionResult,
        metered_cost: Decimal,
    ) -> SettlementOutcome:
        if metered_cost <= 0:
            return SettlementOutcome(status=BillingOutcome.NOT_BILLED, cost=_ZERO)
        try:
            self.ledger.deduct(
                account_id,
                metered_cost,
                description=f"Search task {task_id}",
                task_id=task_id,
            )
        except InsufficientBalanceError as error:
            logger.warning("Postpaid settlement short for task %s: %s", task_id, error)
            return SettlementOutcome(
                status=BillingOutcome.SHORTFALL,
                cost=_ZERO,
                note=(
                    f"Billing shortfall: cost {error.amount} could not be deducted, "
                    f"available balance {error.available}."
                ),
            )
        return SettlementOutcome(status=BillingOutcome.SETTLED, cost=metered_cost)


class PrepaidFreezeSettlePolicy:
    """Freeze the worst-case cost up front; settle to the actual cost afterwards."""

    name = BillingPolicyName.PREPAID_FREEZE_SETTLE

    def __init__(self, ledger: CreditLedger) -> None:
        self.ledger = ledger

    def admit(self, account_id: str, task_id: str, estimate: CostEstimate) -> AdmissionResult:
        if estimate.maximum <= 0:
            return AdmissionResult(
                policy=self.name,
                estimate=estimate,
                frozen_amount=_ZERO,
                available_balance=self.ledger.get_account(account_id).available_balance,
            )
        frozen = self.ledger.freeze(account_id, estimate.maximum, task_id)
        return AdmissionResult(
            policy=self.name,
            estimate=estimate,
            frozen_amount=frozen.amount,
            available_balance=frozen.available_balance,
        )

    def settle(
        self,
        account_id: str,
        task_id: str,
        admission: AdmissionResult,
        metered_cost: Decimal,
    ) -> SettlementOutcome:
        if admission.frozen_amount <= 0:
            # Nothing was frozen, so there is nothing to charge against.
            return SettlementOutcome(status=BillingOutcome.NOT_BILLED, cost=_ZERO)
        result = self.ledger.settle(
            account_id,
            frozen_amount=admission.frozen_amount,
            actual_cost=metered_cost,
            task_id=task_id,
        )
        return SettlementOutcome(
            status=BillingOutcome.SETTLED,
            cost=result.actual_cost,
            refund=result.refund,
        )


def build_billing_policy(name: BillingPolicyName | str, ledger: CreditLedger) -> BillingPolicy:
    policy_name = BillingPolicyName(name)
    if policy_name == BillingPolicyName.POSTPAID_DEDUCT:
        return PostpaidDeductPolicy(ledger)
    return PrepaidFreezeSettlePolicy(ledger)
