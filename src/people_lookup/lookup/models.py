"""Domain models for lookup tasks, records and credit accounting."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

MAX_NAMES_PER_TASK = 100
FILTER_CONFIG_VERSION = 1


class TaskStatus(str, Enum):
    """Durable search task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INSUFFICIENT_CREDITS = "insufficient_credits"


TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.INSUFFICIENT_CREDITS,
    },
)


class SearchMode(str, Enum):
    NAME_ONLY = "nameOnly"
    NAME_LOCATION = "nameLocation"


class BillingPolicyName(str, Enum):
    """Named admission/settlement strategies."""

    POSTPAID_DEDUCT = "postpaid_deduct"
    PREPAID_FREEZE_SETTLE = "prepaid_freeze_settle"


class BillingOutcome(str, Enum):
    """Settlement result attached to a finished task."""

    SETTLED = "settled"
    SHORTFALL = "shortfall"
    NOT_BILLED = "not_billed"


class LedgerEntryType(str, Enum):
    CREDIT = "credit"
    DEDUCT = "deduct"
    FREEZE = "freeze"
    SETTLE_REFUND = "settle-refund"
    SETTLE = "settle"


@dataclass(slots=True, frozen=True)
class SearchQuery:
    """One (name, optional location) pair as submitted."""

    name: str
    location: str | None = None


@dataclass(slots=True, frozen=True)
class SubTask:
    """Unit of concurrent fan-out during execution."""

    index: int
    name: str
    location: str | None = None

    @property
    def label(self) -> str:
        if self.location:
            return f"{self.name} @ {self.location}"
        return self.name


@dataclass(slots=True, frozen=True)
class CandidateRef:
    """Candidate produced by the search phase."""

    detail_link: str
    sub_task_index: int
    search_name: str
    search_location: str | None = None


@dataclass(slots=True, frozen=True)
class PhoneNumber:
    number: str
    phone_type: str | None = None
    carrier: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {"number": self.number, "phone_type": self.phone_type, "carrier": self.carrier}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> PhoneNumber:
        return cls(
            number=str(payload.get("number") or ""),
            phone_type=_optional_str(payload.get("phone_type")),
            carrier=_optional_str(payload.get("carrier")),
        )


_PROVENANCE_FIELDS = frozenset({"sub_task_index", "search_name", "search_location", "from_cache"})


@dataclass(slots=True, frozen=True)
class DetailRecord:
    """Resolved person record.

    ``phone``, ``phone_type`` and ``carrier`` describe the primary number and are
    what the filter pipeline inspects; ``phones`` keeps every number found.
    The provenance fields (``sub_task_index`` onwards) are task-local and never
    written to the cache payload.
    """

    detail_link: str
    name: str
    first_name: str | None = None
    last_name: str | None = None
    age: int | None = None
    city: str | None = None
    state: str | None = None
    location: str | None = None
    phone: str | None = None
    phone_type: str | None = None
    carrier: str | None = None
    phones: tuple[PhoneNumber, ...] = ()
    report_year: int | None = None
    marital_status: str | None = None
    is_deceased: bool | None = None
    family_members: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    sub_task_index: int = 0
    search_name: str = ""
    search_location: str | None = None
    from_cache: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Cache blob for this record, without task provenance."""

        payload: dict[str, Any] = {}
        for item in fields(self):
            if item.name in _PROVENANCE_FIELDS:
                continue
            value = getattr(self, item.name)
            if item.name == "phones":
                value = [phone.to_payload() for phone in value]
            elif isinstance(value, tuple):
                value = list(value)
            payload[item.name] = value
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> DetailRecord:
        detail_link = payload.get("detail_link")
        if not detail_link:
            raise ValueError("Detail payload has no detail_link.")
        deceased = payload.get("is_deceased")
        return cls(
            detail_link=str(detail_link),
            name=str(payload.get("name") or ""),
            first_name=_optional_str(payload.get("first_name")),
            last_name=_optional_str(payload.get("last_name")),
            age=_optional_int(payload.get("age")),
            city=_optional_str(payload.get("city")),
            state=_optional_str(payload.get("state")),
            location=_optional_str(payload.get("location")),
            phone=_optional_str(payload.get("phone")),
            phone_type=_optional_str(payload.get("phone_type")),
            carrier=_optional_str(payload.get("carrier")),
            phones=tuple(PhoneNumber.from_payload(item) for item in payload.get("phones") or ()),
            report_year=_optional_int(payload.get("report_year")),
            marital_status=_optional_str(payload.get("marital_status")),
            is_deceased=None if deceased is None else bool(deceased),
            family_members=tuple(str(item) for item in payload.get("family_members") or ()),
            emails=tuple(str(item) for item in payload.get("emails") or ()),
        )

    def with_provenance(self, candidate: CandidateRef, *, from_cache: bool) -> DetailRecord:
        return replace(
            self,
            sub_task_index=candidate.sub_task_index,
            search_name=candidate.search_name,
            search_location=candidate.search_location,
            from_cache=from_cache,
        )

    @property
    def has_phone(self) -> bool:
        return bool(self.phone) or any(phone.number for phone in self.phones)


@dataclass(slots=True, frozen=True)
class FilterDefaults:
    """Product defaults applied to unset filter fields at submission."""

    min_age: int = 50
    max_age: int = 79
    min_report_year: int = 2025


_FILTER_ALIASES = {
    "excludeDeceased": "exclude_deceased",
    "minAge": "min_age",
    "maxAge": "max_age",
    "minYear": "min_report_year",
    "minReportYear": "min_report_year",
    "excludeMarried": "exclude_married",
    "excludeTMobile": "exclude_t_mobile",
    "excludeComcast": "exclude_comcast",
    "excludeLandline": "exclude_landline",
    "requirePhone": "require_phone",
}
_FILTER_INT_FIELDS = frozenset({"min_age", "max_age", "min_report_year"})


@dataclass(slots=True, frozen=True)
class FilterConfig:
    """Closed, versioned filter criteria for one task."""

    version: int = FILTER_CONFIG_VERSION
    exclude_deceased: bool = True
    min_age: int | None = None
    max_age: int | None = None
    min_report_year: int | None = None
    exclude_married: bool = False
    exclude_t_mobile: bool = False
    exclude_comcast: bool = False
    exclude_landline: bool = False
    require_phone: bool = False

    def __post_init__(self) -> None:
        if self.version != FILTER_CONFIG_VERSION:
            raise ValueError(
                f"Unsupported filter config version {self.version!r}; "
                f"expected {FILTER_CONFIG_VERSION}.",
            )
        for name in ("min_age", "max_age"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"Filter {name} must be >= 0.")
        if self.min_age is not None and self.max_age is not None and self.min_age > self.max_age:
            raise ValueError("Filter min_age must be <= max_age.")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> FilterConfig:
        """Build from a snake_case or camelCase mapping, rejecting unknown keys."""

        if not data:
            return cls()
        known = {item.name for item in fields(cls)}
        values: dict[str, Any] = {}
        unknown: list[str] = []
        for raw_key, value in data.items():
            key = _FILTER_ALIASES.get(raw_key, raw_key)
            if key not in known:
                unknown.append(raw_key)
                continue
            if key in values:
                raise ValueError(f"Filter field {key!r} given more than once.")
            values[key] = _coerce_filter_value(key, value)
        if unknown:
            raise ValueError(f"Unknown filter keys: {', '.join(sorted(unknown))}.")
        return cls(**values)

    def to_mapping(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self)}

    def with_defaults(self, defaults: FilterDefaults) -> FilterConfig:
        """Fill unset bounds from product defaults; a single explicit bound widens the window."""

        min_age, max_age = self.min_age, self.max_age
        if min_age is None and max_age is None:
            min_age, max_age = defaults.min_age, defaults.max_age
        elif min_age is None:
            min_age = min(defaults.min_age, max_age)
        elif max_age is None:
            max_age = max(defaults.max_age, min_age)
        return replace(
            self,
            min_age=min_age,
            max_age=max_age,
            min_report_year=(
                defaults.min_report_year if self.min_report_year is None else self.min_report_year
            ),
        )


@dataclass(slots=True, frozen=True)
class SearchRequest:
    """Batch submission: names crossed with locations in name+location mode."""

    names: tuple[str, ...]
    mode: SearchMode = SearchMode.NAME_ONLY
    locations: tuple[str, ...] = ()
    filters: FilterConfig = field(default_factory=FilterConfig)

    def __post_init__(self) -> None:
        cleaned = tuple(name.strip() for name in self.names if name.strip())
        if not cleaned:
            raise ValueError("At least one search name is required.")
        if len(cleaned) > MAX_NAMES_PER_TASK:
            raise ValueError(f"At most {MAX_NAMES_PER_TASK} names per task are allowed.")
        object.__setattr__(self, "names", cleaned)
        object.__setattr__(
            self,
            "locations",
            tuple(location.strip() for location in self.locations if location.strip()),
        )

    def queries(self) -> list[SearchQuery]:
        if self.mode == SearchMode.NAME_ONLY:
            return [SearchQuery(name=name) for name in self.names]
        locations: tuple[str | None, ...] = self.locations or (None,)
        return [
            SearchQuery(name=name, location=location)
            for name in self.names
            for location in locations
        ]

    def sub_tasks(self) -> list[SubTask]:
        return [
            SubTask(index=index, name=query.name, location=query.location)
            for index, query in enumerate(self.queries())
        ]


@dataclass(slots=True)
class TaskLogEntry:
    timestamp: datetime
    message: str


@dataclass(slots=True)
class TaskProgressUpdate:
    """Partial task update; ``None`` fields are left untouched."""

    progress_percent: int | None = None
    completed_sub_tasks: int | None = None
    search_requests_used: int | None = None
    detail_requests_used: int | None = None
    cache_hits: int | None = None
    logs: list[TaskLogEntry] | None = None


@dataclass(slots=True)
class TaskCounters:
    """Final counters persisted when a task finishes."""

    search_requests_used: int = 0
    detail_requests_used: int = 0
    cache_hits: int = 0
    total_results: int = 0
    filtered_out: int = 0
    completed_sub_tasks: int = 0
    credits_used: Decimal = Decimal("0.0")
    billing_status: BillingOutcome | None = None
    billing_note: str | None = None


@dataclass(slots=True)
class SearchTaskView:
    """Readable task view for polling and CLI."""

    task_id: str
    owner_id: str
    mode: SearchMode
    queries: list[SearchQuery]
    filters: FilterConfig
    billing_policy: BillingPolicyName
    status: TaskStatus
    progress_percent: int
    total_sub_tasks: int
    completed_sub_tasks: int
    search_requests_used: int
    detail_requests_used: int
    cache_hits: int
    total_results: int
    filtered_out: int
    credits_used: Decimal
    frozen_amount: Decimal
    billing_status: BillingOutcome | None
    billing_note: str | None
    logs: list[TaskLogEntry]
    error_message: str | None
    cancel_requested: bool
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class TaskPage:
    items: list[SearchTaskView]
    page: int
    page_size: int
    total: int


@dataclass(slots=True)
class ResultPage:
    items: list[DetailRecord]
    page: int
    page_size: int
    total: int


@dataclass(slots=True)
class LedgerAccountView:
    account_id: str
    available_balance: Decimal
    frozen_balance: Decimal
    updated_at: datetime


@dataclass(slots=True)
class LedgerEntryView:
    entry_id: int
    account_id: str
    amount: Decimal
    balance_after: Decimal
    entry_type: LedgerEntryType
    description: str
    related_task_id: str | None
    created_at: datetime


def _coerce_filter_value(key: str, value: Any) -> Any:
    if key == "version" or key in _FILTER_INT_FIELDS:
        if value is None and key != "version":
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Filter field {key!r} must be an integer, got {value!r}.")
        return value
    if not isinstance(value, bool):
        raise ValueError(f"Filter field {key!r} must be a boolean, got {value!r}.")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
