from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
import json
import os
from typing import Any, Literal, TypeVar, cast
import urllib.error
import urllib.request

import loguru
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from moneyspread.infra.clients.credentials import PlaidCredentials, require_credentials

PlaidEnv = Literal["sandbox", "development", "production"]

M = TypeVar("M", bound="PlaidBaseModel")

PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# /transactions/get accepts at most 500 records per request.
MAX_PAGE_SIZE = 500
# Guards against a server that keeps reporting a growing total.
MAX_PAGES = 10


class AggregatorError(Exception):
    """A Plaid call failed: HTTP status, network error or embedded error code."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        http_status: int | None = None,
        operation: str | None = None,
    ) -> None:
        self.code = code
        self.http_status = http_status
        self.operation = operation
        super().__init__(message)


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls: type[M], data: Any) -> M:
        return cls.model_validate(data)


class LinkTokenCreateResponse(PlaidBaseModel):
    link_token: str


class PublicTokenExchangeResponse(PlaidBaseModel):
    access_token: str
    item_id: str | None = None


class AccountBalances(PlaidBaseModel):
    available: float | None = None
    current: float | None = None
    iso_currency_code: str | None = None


class PlaidAccount(PlaidBaseModel):
    account_id: str
    name: str | None = None
    official_name: str | None = None
    mask: str | None = None
    type: str | None = None
    subtype: str | None = None
    balances: AccountBalances = Field(default_factory=AccountBalances)


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[PlaidAccount] = Field(default_factory=list)


class PlaidTransaction(PlaidBaseModel):
    transaction_id: str
    account_id: str
    # Plaid convention: positive amounts are money leaving the account.
    amount: float
    date: str
    name: str
    merchant_name: str | None = None
    category: list[str] | None = None
    iso_currency_code: str | None = None
    pending: bool = False


class TransactionsGetResponse(PlaidBaseModel):
    transactions: list[PlaidTransaction] = Field(default_factory=list)
    total_transactions: int = 0


@dataclass
class FetchMetadata:
    total_transactions: int
    total_available: int
    start_date: str
    end_date: str
    days_back: int
    request_count: int
    error: str | None = None


@dataclass
class FetchResult:
    accounts: list[PlaidAccount]
    transactions: list[PlaidTransaction]
    metadata: FetchMetadata

    @property
    def degraded(self) -> bool:
        return self.metadata.error is not None


@dataclass
class _PageState:
    transactions: list[PlaidTransaction] = field(default_factory=list)
    total_available: int = 0
    request_count: int = 0


def _token_prefix(token: str) -> str:
    return token[:12] + "..." if len(token) > 12 else token


class PlaidClientLogger:
    """Handles all logging for PlaidClient."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def request_failed(self, operation: str, error: AggregatorError) -> None:
        self._logger.bind(
            operation=operation, code=error.code, http_status=error.http_status
        ).error("Plaid {} failed: {}", operation, error)

    def fetch_start(
        self, access_token: str, start_date: date, end_date: date, max_txns: int
    ) -> None:
        self._logger.bind(
            token=_token_prefix(access_token),
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        ).info(
            "Fetching Plaid data {} to {} (max {} transactions)",
            start_date.isoformat(),
            end_date.isoformat(),
            max_txns,
        )

    def page_fetched(
        self, page_num: int, page_size: int, fetched: int, total: int
    ) -> None:
        self._logger.bind(page=page_num, fetched=fetched, total=total).debug(
            "Transactions page {}: {} records ({} of {} fetched)",
            page_num,
            page_size,
            fetched,
            total,
        )

    def page_cap_reached(self, fetched: int, total: int) -> None:
        self._logger.bind(fetched=fetched, total=total).warning(
            "Stopped after {} pages with {} of {} reported transactions",
            MAX_PAGES,
            fetched,
            total,
        )

    def degraded(self, accounts_count: int, error: AggregatorError) -> None:
        self._logger.bind(accounts=accounts_count).warning(
            "Transactions fetch failed, returning {} accounts only: {}",
            accounts_count,
            error,
        )

    def fetch_complete(self, result: FetchResult) -> None:
        meta = result.metadata
        self._logger.bind(
            accounts=len(result.accounts),
            transactions=meta.total_transactions,
            total_available=meta.total_available,
            requests=meta.request_count,
        ).info(
            "Plaid fetch complete: {} accounts, {} of {} transactions in {} requests",
            len(result.accounts),
            meta.total_transactions,
            meta.total_available,
            meta.request_count,
        )


class PlaidClient:
    def __init__(
        self,
        *,
        credentials: PlaidCredentials,
        env: PlaidEnv = "sandbox",
        client_name: str = "MoneySpread",
        country_codes: list[str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._env = env
        self._client_name = client_name
        self._country_codes = country_codes or ["US", "CA"]
        self._timeout = timeout
        self._logger = PlaidClientLogger()

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_SECRET_KEY
        Optional:
        - PLAID_ENV (sandbox, development or production; defaults to sandbox)
        - PLAID_CLIENT_NAME

        Raises:
            CredentialsMissing: If either credential is absent
            ValueError: If PLAID_ENV is not a known environment
        """
        credentials = require_credentials()
        env_str = os.getenv("PLAID_ENV", "sandbox").strip().lower()
        if env_str not in PLAID_ENV_MAP:
            raise ValueError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        env = cast(PlaidEnv, env_str)
        client_name = os.getenv("PLAID_CLIENT_NAME", "MoneySpread")
        return cls(credentials=credentials, env=env, client_name=client_name)

    def _base_url(self) -> str:
        return PLAID_ENV_MAP[self._env]

    def _auth(self) -> dict[str, str]:
        return {
            "client_id": self._credentials.client_id,
            "secret": self._credentials.secret,
        }

    @staticmethod
    def _error_from_body(
        body: dict[str, Any], *, operation: str, http_status: int | None
    ) -> AggregatorError:
        code = body.get("error_code")
        message = body.get("error_message") or body.get("display_message") or ""
        return AggregatorError(
            f"Plaid {operation} error {code}: {message}".rstrip(": "),
            code=code,
            http_status=http_status,
            operation=operation,
        )

    def _parse_json_response(self, body: str, *, operation: str) -> dict[str, Any]:
        """Parse JSON response from Plaid API.

        Raises:
            AggregatorError: If the body is not a JSON object
        """
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise AggregatorError(
                f"Failed to parse Plaid {operation} response as JSON: {e}",
                operation=operation,
            ) from e
        if not isinstance(data, dict):
            raise AggregatorError(
                f"Unexpected Plaid {operation} response: {type(data).__name__}",
                operation=operation,
            )
        return cast(dict[str, Any], data)

    def _post(
        self, path: str, payload: dict[str, Any], *, operation: str
    ) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps({**self._auth(), **payload}).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            try:
                parsed = json.loads(err_body)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("error_code"):
                raise self._error_from_body(
                    parsed, operation=operation, http_status=e.code
                ) from e
            raise AggregatorError(
                f"Plaid {operation} HTTP error ({e.code}): {err_body}",
                http_status=e.code,
                operation=operation,
            ) from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise AggregatorError(
                f"Network error calling Plaid {operation}: {e}", operation=operation
            ) from e

        parsed_body = self._parse_json_response(body, operation=operation)
        if parsed_body.get("error_code"):
            raise self._error_from_body(
                parsed_body, operation=operation, http_status=None
            )
        return parsed_body

    def _call(
        self, model: type[M], path: str, payload: dict[str, Any], *, operation: str
    ) -> M:
        try:
            return model.parse(self._post(path, payload, operation=operation))
        except ValidationError as e:
            raise AggregatorError(
                f"Unexpected Plaid {operation} response shape: {e}",
                operation=operation,
            ) from e
        except AggregatorError as e:
            self._logger.request_failed(operation, e)
            raise

    # High-level APIs -----------------------------------------------------

    def create_link_token(self, user_id: str) -> str:
        """Create a Plaid Link token for the transactions product."""
        payload: dict[str, Any] = {
            "client_name": self._client_name,
            "language": "en",
            "country_codes": self._country_codes,
            "user": {"client_user_id": user_id},
            "products": ["transactions"],
        }
        resp = self._call(
            LinkTokenCreateResponse,
            "/link/token/create",
            payload,
            operation="link token create",
        )
        return resp.link_token

    def exchange_public_token(self, public_token: str) -> str:
        """Exchange a Link public_token for a durable access_token."""
        resp = self._call(
            PublicTokenExchangeResponse,
            "/item/public_token/exchange",
            {"public_token": public_token},
            operation="public token exchange",
        )
        return resp.access_token

    def get_accounts(self, access_token: str) -> list[PlaidAccount]:
        """Return accounts for an item using Plaid's /accounts/get endpoint."""
        resp = self._call(
            AccountsGetResponse,
            "/accounts/get",
            {"access_token": access_token},
            operation="accounts get",
        )
        return resp.accounts

    def get_transactions_page(
        self,
        access_token: str,
        *,
        start_date: date,
        end_date: date,
        count: int = MAX_PAGE_SIZE,
        offset: int = 0,
    ) -> TransactionsGetResponse:
        """Return one page of /transactions/get."""
        payload: dict[str, Any] = {
            "access_token": access_token,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "options": {
                "count": count,
                "offset": offset,
            },
        }
        return self._call(
            TransactionsGetResponse,
            "/transactions/get",
            payload,
            operation="transactions get",
        )

    def fetch_accounts_and_transactions(
        self,
        access_token: str,
        *,
        days_back: int = 90,
        max_transactions: int = 2000,
        today: date | None = None,
    ) -> FetchResult:
        """Fetch accounts, then page through transactions.

        Paging stops when the reported total is reached, a page comes back
        empty, ``max_transactions`` is reached or MAX_PAGES requests have been
        made. A failed transactions page does not discard the accounts: the
        result comes back with no transactions and ``metadata.error`` set.

        Raises:
            AggregatorError: If the accounts call fails
        """
        end_date = today or date.today()
        start_date = end_date - timedelta(days=days_back)
        self._logger.fetch_start(access_token, start_date, end_date, max_transactions)

        accounts = self.get_accounts(access_token)

        state = _PageState()
        error: str | None = None
        while (
            state.request_count < MAX_PAGES
            and len(state.transactions) < max_transactions
        ):
            count = min(MAX_PAGE_SIZE, max_transactions - len(state.transactions))
            try:
                page = self.get_transactions_page(
                    access_token,
                    start_date=start_date,
                    end_date=end_date,
                    count=count,
                    offset=len(state.transactions),
                )
            except AggregatorError as e:
                state.request_count += 1
                self._logger.degraded(len(accounts), e)
                error = (
                    "Transaction fetch failed but accounts retrieved successfully: "
                    f"{e}"
                )
                state.transactions = []
                break

            state.request_count += 1
            state.total_available = page.total_transactions
            state.transactions.extend(page.transactions)
            self._logger.page_fetched(
                state.request_count,
                len(page.transactions),
                len(state.transactions),
                state.total_available,
            )
            if (
                not page.transactions
                or len(state.transactions) >= page.total_transactions
            ):
                break
        else:
            if (
                state.request_count >= MAX_PAGES
                and len(state.transactions) < state.total_available
                and len(state.transactions) < max_transactions
            ):
                self._logger.page_cap_reached(
                    len(state.transactions), state.total_available
                )

        transactions = state.transactions[:max_transactions]
        result = FetchResult(
            accounts=accounts,
            transactions=transactions,
            metadata=FetchMetadata(
                total_transactions=len(transactions),
                total_available=state.total_available,
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
                days_back=days_back,
                request_count=state.request_count,
                error=error,
            ),
        )
        self._logger.fetch_complete(result)
        return result
