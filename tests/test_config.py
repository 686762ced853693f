from decimal import Decimal
from pathlib import Path

import allure
import pytest

from people_lookup.config import Settings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Settings"),
]


def test_settings_defaults(monkeypatch) -> None:
    monkeypatch.delenv("PEOPLE_LOOKUP_DB_PATH", raising=False)
    monkeypatch.delenv("PEOPLE_LOOKUP_PROVIDER_FIXTURE", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".people_lookup.db")
    assert settings.pricing.search_cost == Decimal("0.3")
    assert settings.pricing.billing_policy == "prepaid_freeze_settle"
    assert settings.filter_defaults.min_age == 50
    assert settings.execution.max_details_per_subtask == 50
    assert settings.provider.fixture_path is None
    settings.validate()


def test_settings_read_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PEOPLE_LOOKUP_SEARCH_COST", "0.5")
    monkeypatch.setenv("PEOPLE_LOOKUP_WAVE_SIZE", "8")
    monkeypatch.setenv("PEOPLE_LOOKUP_ENABLED", "off")
    monkeypatch.setenv("PEOPLE_LOOKUP_USER_ID", "analyst")
    monkeypatch.setenv("PEOPLE_LOOKUP_PROVIDER_FIXTURE", str(tmp_path / "fixture.json"))

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.pricing.search_cost == Decimal("0.5")
    assert settings.execution.wave_size == 8
    assert settings.provider.enabled is False
    assert settings.user_context.user_id == "analyst"
    assert settings.provider.fixture_path == tmp_path / "fixture.json"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PEOPLE_LOOKUP_WAVE_SIZE", "many"),
        ("PEOPLE_LOOKUP_SEARCH_COST", "cheap"),
        ("PEOPLE_LOOKUP_ENABLED", "perhaps"),
    ],
)
def test_malformed_environment_values_fail_fast(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PEOPLE_LOOKUP_WAVE_SIZE", "0"),
        ("PEOPLE_LOOKUP_DETAIL_COST", "-0.1"),
        ("PEOPLE_LOOKUP_BILLING_POLICY", "free"),
        ("PEOPLE_LOOKUP_DEFAULT_MAX_AGE", "10"),
    ],
)
def test_validate_names_offending_variable(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        Settings.from_env().validate()
