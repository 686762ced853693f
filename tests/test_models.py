import allure
import pytest

from people_lookup.lookup.models import (
    MAX_NAMES_PER_TASK,
    CandidateRef,
    DetailRecord,
    FilterConfig,
    FilterDefaults,
    PhoneNumber,
    SearchMode,
    SearchRequest,
)

pytestmark = [
    allure.epic("Search Tasks"),
    allure.feature("Submission Model"),
]


def test_name_location_mode_crosses_names_with_locations() -> None:
    request = SearchRequest(
        names=(" Jane Doe ", "John Roe", "  "),
        mode=SearchMode.NAME_LOCATION,
        locations=("Austin, TX", "Dallas, TX"),
    )

    assert request.names == ("Jane Doe", "John Roe")
    assert [(item.index, item.name, item.location) for item in request.sub_tasks()] == [
        (0, "Jane Doe", "Austin, TX"),
        (1, "Jane Doe", "Dallas, TX"),
        (2, "John Roe", "Austin, TX"),
        (3, "John Roe", "Dallas, TX"),
    ]


def test_name_location_mode_without_locations_searches_names_only() -> None:
    request = SearchRequest(names=("Jane Doe",), mode=SearchMode.NAME_LOCATION)

    assert [(item.name, item.location) for item in request.queries()] == [("Jane Doe", None)]


def test_name_only_mode_ignores_locations() -> None:
    request = SearchRequest(names=("Jane Doe",), locations=("Austin, TX",))

    assert len(request.sub_tasks()) == 1
    assert request.sub_tasks()[0].location is None


@pytest.mark.parametrize(
    "names",
    [(), ("", "   "), tuple(f"Name {index}" for index in range(MAX_NAMES_PER_TASK + 1))],
)
def test_request_rejects_empty_or_oversized_name_lists(names: tuple[str, ...]) -> None:
    with pytest.raises(ValueError):
        SearchRequest(names=names)


def test_filter_config_accepts_camel_case_aliases() -> None:
    config = FilterConfig.from_mapping(
        {"minAge": 40, "maxAge": 70, "minYear": 2024, "excludeTMobile": True, "requirePhone": True},
    )

    assert config.min_age == 40
    assert config.max_age == 70
    assert config.min_report_year == 2024
    assert config.exclude_t_mobile is True
    assert config.require_phone is True
    assert config.exclude_deceased is True


@pytest.mark.parametrize(
    "data",
    [
        {"unknownKey": True},
        {"minAge": "40"},
        {"excludeMarried": 1},
        {"version": 2},
        {"minAge": 80, "maxAge": 20},
        {"minAge": 40, "min_age": 41},
    ],
)
def test_filter_config_rejects_invalid_mappings(data: dict) -> None:
    with pytest.raises(ValueError):
        FilterConfig.from_mapping(data)


def test_filter_defaults_fill_only_unset_fields() -> None:
    config = FilterConfig(min_age=30).with_defaults(FilterDefaults())

    assert config.min_age == 30
    assert config.max_age == 79
    assert config.min_report_year == 2025
    assert FilterConfig.from_mapping(config.to_mapping()) == config


@pytest.mark.parametrize(
    ("given", "expected"),
    [
        (FilterConfig(min_age=85), (85, 85)),
        (FilterConfig(max_age=40), (40, 40)),
        (FilterConfig(min_age=60), (60, 79)),
        (FilterConfig(max_age=70), (50, 70)),
        (FilterConfig(), (50, 79)),
    ],
)
def test_single_age_bound_keeps_window_valid(
    given: FilterConfig,
    expected: tuple[int, int],
) -> None:
    config = given.with_defaults(FilterDefaults())

    assert (config.min_age, config.max_age) == expected


def test_detail_payload_excludes_task_provenance() -> None:
    record = DetailRecord(
        detail_link="link-1",
        name="Jane Doe",
        age=61,
        phones=(PhoneNumber("(512) 555-0100", "wireless", "Verizon"),),
        emails=("jane@example.com",),
    )
    candidate = CandidateRef("link-1", sub_task_index=2, search_name="Jane Doe")

    stamped = record.with_provenance(candidate, from_cache=True)
    payload = stamped.to_payload()

    assert "from_cache" not in payload
    assert "sub_task_index" not in payload
    assert payload["phones"] == [
        {"number": "(512) 555-0100", "phone_type": "wireless", "carrier": "Verizon"},
    ]
    assert DetailRecord.from_payload(payload) == record
    assert stamped.from_cache is True
    assert stamped.sub_task_index == 2


def test_detail_payload_requires_link() -> None:
    with pytest.raises(ValueError):
        DetailRecord.from_payload({"name": "Jane Doe"})
