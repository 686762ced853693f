"""Fixed-order post-fetch filter pipeline."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from people_lookup.lookup.models import DetailRecord, FilterConfig

T_MOBILE_MARKERS = ("t-mobile", "tmobile")
COMCAST_MARKERS = ("comcast", "xfinity")


@dataclass(slots=True, frozen=True)
class FilterStage:
    """Named predicate; ``keep`` returns True for records that survive the stage."""

    name: str
    enabled: Callable[[FilterConfig], bool]
    keep: Callable[[DetailRecord, FilterConfig], bool]


@dataclass(slots=True, frozen=True)
class StageCount:
    name: str
    before: int
    after: int

    @property
    def removed(self) -> int:
        return self.before - self.after


@dataclass(slots=True)
class FilterPipelineResult:
    records: list[DetailRecord]
    stages: list[StageCount]

    @property
    def filtered_out(self) -> int:
        return sum(stage.removed for stage in self.stages)


def _not_deceased(record: DetailRecord, _config: FilterConfig) -> bool:
    return record.is_deceased is not True


def _in_age_range(record: DetailRecord, config: FilterConfig) -> bool:
    if record.age is None:
        return True
    if config.min_age is not None and record.age < config.min_age:
        return False
    return config.max_age is None or record.age <= config.max_age


def _recent_report(record: DetailRecord, config: FilterConfig) -> bool:
    if record.report_year is None or config.min_report_year is None:
        return True
    return record.report_year >= config.min_report_year


def _not_married(record: DetailRecord, _config: FilterConfig) -> bool:
    if not record.marital_status:
        return True
    return record.marital_status.strip().lower() != "married"


def _carrier_excluder(markers: tuple[str, ...]) -> Callable[[DetailRecord, FilterConfig], bool]:
    def keep(record: DetailRecord, _config: FilterConfig) -> bool:
        if not record.carrier:
            return True
        carrier = record.carrier.lower()
        return not any(marker in carrier for marker in markers)

    return keep


def _not_landline(record: DetailRecord, _config: FilterConfig) -> bool:
    if not record.phone_type:
        return True
    return record.phone_type.strip().lower() != "landline"


def _has_phone(record: DetailRecord, _config: FilterConfig) -> bool:
    return record.has_phone


DEFAULT_STAGES: tuple[FilterStage, ...] = (
    FilterStage("exclude_deceased", lambda config: config.exclude_deceased, _not_deceased),
    FilterStage(
        "age_range",
        lambda config: config.min_age is not None or config.max_age is not None,
        _in_age_range,
    ),
    FilterStage(
        "min_report_year",
        lambda config: config.min_report_year is not None,
        _recent_report,
    ),
    FilterStage("exclude_married", lambda config: config.exclude_married, _not_married),
    FilterStage(
        "exclude_carrier_t_mobile",
        lambda config: config.exclude_t_mobile,
        _carrier_excluder(T_MOBILE_MARKERS),
    ),
    FilterStage(
        "exclude_carrier_comcast",
        lambda config: config.exclude_comcast,
        _carrier_excluder(COMCAST_MARKERS),
    ),
    FilterStage("exclude_landline", lambda config: config.exclude_landline, _not_landline),
    FilterStage("require_phone", lambda config: config.require_phone, _has_phone),
)


def run_filter_pipeline(
    records: Sequence[DetailRecord],
    config: FilterConfig,
    *,
    stages: Sequence[FilterStage] = DEFAULT_STAGES,
) -> FilterPipelineResult:
    """Apply enabled stages in order, counting records before and after each one.

    Input order is preserved. The pipeline reads nothing but its arguments.
    """

    current = list(records)
    counts: list[StageCount] = []
    for stage in stages:
        if not stage.enabled(config):
            continue
        before = len(current)
        current = [record for record in current if stage.keep(record, config)]
        counts.append(StageCount(name=stage.name, before=before, after=len(current)))
    return FilterPipelineResult(records=current, stages=counts)
