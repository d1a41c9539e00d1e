"""Access token storage adapters."""

from __future__ import annotations

from moneyspread.adapters.storage.token_store import (
    ACCESS_TOKEN_KEY,
    FileTokenStore,
    InMemoryTokenStore,
    TokenStore,
)

__all__ = [
    "ACCESS_TOKEN_KEY",
    "FileTokenStore",
    "InMemoryTokenStore",
    "TokenStore",
]
