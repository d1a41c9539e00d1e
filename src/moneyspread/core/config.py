from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import cast

from moneyspread.infra.clients.plaid import PLAID_ENV_MAP, PlaidEnv
from moneyspread.tools.categorize.categorizer_tool import DEFAULT_MODEL

DEFAULT_DATABASE_URL = "sqlite:///moneyspread.db"
DEFAULT_USER_ID = "local-user"
DEFAULT_TOKEN_FILE = ".moneyspread/token.json"


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Process configuration loaded at startup."""

    database_url: str = DEFAULT_DATABASE_URL
    user_id: str = DEFAULT_USER_ID
    token_file: Path = Path(DEFAULT_TOKEN_FILE)
    plaid_env: PlaidEnv = "sandbox"
    categorizer_model: str = DEFAULT_MODEL
    categorization_delay: float = 0.5


def _env(name: str, default: str) -> str:
    return os.environ.get(name, "").strip() or default


def load_app_config_from_env() -> AppConfig:
    """Load app config from env and validate it."""
    plaid_env = _env("PLAID_ENV", "sandbox").lower()
    if plaid_env not in PLAID_ENV_MAP:
        raise ValueError("PLAID_ENV must be one of: sandbox, development, production")

    delay_value = _env("MONEYSPREAD_CATEGORIZATION_DELAY", "0.5")
    try:
        delay = float(delay_value)
    except ValueError:
        raise ValueError(
            f"MONEYSPREAD_CATEGORIZATION_DELAY must be a number, got {delay_value!r}"
        ) from None
    if delay < 0:
        raise ValueError("MONEYSPREAD_CATEGORIZATION_DELAY must not be negative")

    return AppConfig(
        database_url=_env("MONEYSPREAD_DATABASE_URL", DEFAULT_DATABASE_URL),
        user_id=_env("MONEYSPREAD_USER_ID", DEFAULT_USER_ID),
        token_file=Path(_env("MONEYSPREAD_TOKEN_FILE", DEFAULT_TOKEN_FILE)),
        plaid_env=cast(PlaidEnv, plaid_env),
        categorizer_model=_env("MONEYSPREAD_CATEGORIZER_MODEL", DEFAULT_MODEL),
        categorization_delay=delay,
    )
