from __future__ import annotations

from pathlib import Path

import pytest

from moneyspread.core import AppConfig, load_app_config_from_env

_ENV_VARS = (
    "PLAID_ENV",
    "MONEYSPREAD_DATABASE_URL",
    "MONEYSPREAD_USER_ID",
    "MONEYSPREAD_TOKEN_FILE",
    "MONEYSPREAD_CATEGORIZER_MODEL",
    "MONEYSPREAD_CATEGORIZATION_DELAY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    assert load_app_config_from_env() == AppConfig()


def test_values_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PLAID_ENV", "Production")
    monkeypatch.setenv("MONEYSPREAD_DATABASE_URL", "postgresql://db/money")
    monkeypatch.setenv("MONEYSPREAD_USER_ID", "alex")
    monkeypatch.setenv("MONEYSPREAD_TOKEN_FILE", "/srv/money/token.json")
    monkeypatch.setenv("MONEYSPREAD_CATEGORIZER_MODEL", "gpt-4o")
    monkeypatch.setenv("MONEYSPREAD_CATEGORIZATION_DELAY", "0")

    config = load_app_config_from_env()

    assert config == AppConfig(
        database_url="postgresql://db/money",
        user_id="alex",
        token_file=Path("/srv/money/token.json"),
        plaid_env="production",
        categorizer_model="gpt-4o",
        categorization_delay=0.0,
    )


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PLAID_ENV", "staging"),
        ("MONEYSPREAD_CATEGORIZATION_DELAY", "soon"),
        ("MONEYSPREAD_CATEGORIZATION_DELAY", "-1"),
    ],
)
def test_invalid_values_raise(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=name):
        load_app_config_from_env()
