"""Aggregator credential resolution.

Credentials come from process configuration only. A missing value yields a
``NotConfigured`` marker instead of raising so callers can decide how to
degrade; ``require_credentials`` is the raising form.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os

from loguru import logger

CLIENT_ID_ENV = "PLAID_CLIENT_ID"
SECRET_ENV = "PLAID_SECRET_KEY"


class CredentialsMissing(Exception):
    """Aggregator credentials are not configured. Not retryable."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(
            "Plaid credentials not configured (missing: " + ", ".join(missing) + ")"
        )


@dataclass(frozen=True)
class PlaidCredentials:
    client_id: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class NotConfigured:
    missing: list[str]


def describe_secret(value: str | None) -> str:
    """Loggable description of a secret: existence, length and short prefix."""
    if not value:
        return "missing"
    return f"set (len={len(value)}, prefix={value[:4]}...)"


def get_credentials(
    environ: Mapping[str, str] | None = None,
) -> PlaidCredentials | NotConfigured:
    """Resolve the Plaid client id and secret.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        PlaidCredentials when both values are present and non-empty,
        otherwise NotConfigured naming the missing variables
    """
    env = os.environ if environ is None else environ
    client_id = env.get(CLIENT_ID_ENV, "").strip()
    secret = env.get(SECRET_ENV, "").strip()

    logger.debug(
        "Resolving Plaid credentials (client id {}, secret {})",
        describe_secret(client_id),
        describe_secret(secret),
    )

    missing = [
        name
        for name, value in ((CLIENT_ID_ENV, client_id), (SECRET_ENV, secret))
        if not value
    ]
    if missing:
        return NotConfigured(missing=missing)
    return PlaidCredentials(client_id=client_id, secret=secret)


def require_credentials(environ: Mapping[str, str] | None = None) -> PlaidCredentials:
    """Like get_credentials but raises CredentialsMissing when not configured."""
    result = get_credentials(environ)
    if isinstance(result, NotConfigured):
        raise CredentialsMissing(result.missing)
    return result
