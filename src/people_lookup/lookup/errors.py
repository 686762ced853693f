"""Error taxonomy for the lookup engine."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


class PeopleLookupError(RuntimeError):
    """Base error for lookup engine failures."""


class AdmissionError(PeopleLookupError):
    """Submission rejected before any external call was made."""


class InsufficientCreditsError(AdmissionError):
    """Available balance does not cover the admission estimate."""

    def __init__(
        self,
        *,
        required: Decimal,
        available: Decimal,
        task_id: str | None = None,
    ) -> None:
        self.required = required
        self.available = available
        self.task_id = task_id
        super().__init__(
            f"Insufficient credits: required {required}, available {available}.",
        )


class ProviderUnavailableError(AdmissionError):
    """Lookup provider is disabled or not configured."""


class InsufficientBalanceError(PeopleLookupError):
    """Deduction failed because the available balance was short at that instant."""

    def __init__(self, *, amount: Decimal, available: Decimal) -> None:
        self.amount = amount
        self.available = available
        super().__init__(f"Insufficient balance: amount {amount}, available {available}.")


class LedgerStateError(PeopleLookupError):
    """Ledger operation violates account state (for example frozen balance too low)."""


class TaskNotFoundError(PeopleLookupError):
    """Task does not exist or is not visible to the caller."""


class TaskStateError(PeopleLookupError):
    """Requested transition is not allowed from the current task status."""


@dataclass(slots=True)
class ProviderError(Exception):
    """Single search or detail call failed; recovered per unit by the orchestrator."""

    message: str
    requests_used: int = 0

    def __str__(self) -> str:
        return self.message
