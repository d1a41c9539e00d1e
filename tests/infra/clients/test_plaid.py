"""Tests for the Plaid client."""

from __future__ import annotations

from datetime import date
import json
from typing import Any
from unittest.mock import patch

import pytest

from moneyspread.infra.clients.credentials import CredentialsMissing, PlaidCredentials
from moneyspread.infra.clients.plaid import (
    MAX_PAGES,
    AggregatorError,
    PlaidClient,
)


def create_client() -> PlaidClient:
    return PlaidClient(
        credentials=PlaidCredentials(client_id="test_client_id", secret="test_secret"),
        env="sandbox",
    )


def make_txn(i: int, account_id: str = "acc_1") -> dict[str, Any]:
    return {
        "transaction_id": f"txn_{i}",
        "account_id": account_id,
        "amount": 1.0,
        "date": "2024-01-15",
        "name": f"Transaction {i}",
    }


ACCOUNTS_RESPONSE: dict[str, Any] = {
    "accounts": [
        {
            "account_id": "acc_1",
            "name": "Checking",
            "mask": "0000",
            "type": "depository",
            "subtype": "checking",
            "balances": {"current": 10.0, "iso_currency_code": "CAD"},
        }
    ]
}


class FakePlaidServer:
    """Stands in for PlaidClient._post and records transactions requests."""

    def __init__(
        self,
        *,
        total: int,
        page_size: int | None = None,
        fail_transactions: bool = False,
    ) -> None:
        self._total = total
        self._page_size = page_size
        self._fail_transactions = fail_transactions
        self.transaction_requests: list[dict[str, Any]] = []

    def __call__(
        self, path: str, payload: dict[str, Any], *, operation: str
    ) -> dict[str, Any]:
        if path == "/accounts/get":
            return ACCOUNTS_RESPONSE
        assert path == "/transactions/get"
        self.transaction_requests.append(payload)
        if self._fail_transactions:
            raise AggregatorError(
                "boom", code="INTERNAL_SERVER_ERROR", operation=operation
            )
        options = payload["options"]
        size = self._page_size if self._page_size is not None else options["count"]
        offset = options["offset"]
        count = max(0, min(size, self._total - offset))
        return {
            "transactions": [make_txn(offset + i) for i in range(count)],
            "total_transactions": self._total,
        }

    @property
    def requested_counts(self) -> list[int]:
        return [p["options"]["count"] for p in self.transaction_requests]


class FakeResponse:
    def __init__(self, body: dict[str, Any]) -> None:
        self._body = json.dumps(body).encode("utf-8")

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


class TestPlaidClientLink:
    def test_create_link_token_payload(self) -> None:
        # setup
        client = create_client()

        with patch.object(client, "_post") as mock_post:
            mock_post.return_value = {"link_token": "link-sandbox-123"}

            # act
            result = client.create_link_token("user-1")

            # assert
            assert result == "link-sandbox-123"
            path, payload = mock_post.call_args[0]
            assert path == "/link/token/create"
            assert payload["client_name"] == "MoneySpread"
            assert payload["products"] == ["transactions"]
            assert payload["country_codes"] == ["US", "CA"]
            assert payload["language"] == "en"
            assert payload["user"] == {"client_user_id": "user-1"}

    def test_exchange_public_token_returns_access_token(self) -> None:
        client = create_client()

        with patch.object(client, "_post") as mock_post:
            mock_post.return_value = {
                "access_token": "access-sandbox-abc",
                "item_id": "item-1",
            }

            result = client.exchange_public_token("public-sandbox-xyz")

            assert result == "access-sandbox-abc"  # noqa: S105
            path, payload = mock_post.call_args[0]
            assert path == "/item/public_token/exchange"
            assert payload == {"public_token": "public-sandbox-xyz"}

    def test_malformed_response_raises_aggregator_error(self) -> None:
        client = create_client()

        with patch.object(client, "_post", return_value={"unexpected": True}):
            with pytest.raises(AggregatorError) as exc_info:
                client.create_link_token("user-1")

        assert exc_info.value.operation == "link token create"

    def test_embedded_error_code_raises_with_code(self) -> None:
        # setup
        client = create_client()
        body = {
            "error_code": "INVALID_PUBLIC_TOKEN",
            "error_message": "public token is invalid",
        }

        with patch(
            "urllib.request.urlopen", return_value=FakeResponse(body)
        ) as mock_urlopen:
            # act
            with pytest.raises(AggregatorError) as exc_info:
                client.exchange_public_token("public-bad")

        # assert
        assert exc_info.value.code == "INVALID_PUBLIC_TOKEN"
        assert "public token is invalid" in str(exc_info.value)
        request = mock_urlopen.call_args[0][0]
        assert request.full_url == (
            "https://sandbox.plaid.com/item/public_token/exchange"
        )
        sent = json.loads(request.data)
        assert sent["client_id"] == "test_client_id"
        assert sent["secret"] == "test_secret"  # noqa: S105
        assert mock_urlopen.call_args.kwargs["timeout"] == 30.0


class TestFetchAccountsAndTransactions:
    def test_fetches_all_pages_until_total(self) -> None:
        # setup
        client = create_client()
        server = FakePlaidServer(total=1200)

        with patch.object(client, "_post", side_effect=server):
            # act
            result = client.fetch_accounts_and_transactions(
                "access-token", max_transactions=2000
            )

        # assert
        assert len(server.transaction_requests) == 3
        assert len(result.transactions) == 1200
        assert server.requested_counts == [500, 500, 500]
        assert result.metadata.request_count == 3
        assert result.metadata.total_available == 1200
        assert result.metadata.total_transactions == 1200
        assert result.metadata.error is None
        assert [a.account_id for a in result.accounts] == ["acc_1"]

    def test_stops_at_page_cap_when_total_keeps_growing(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=999999)

        with patch.object(client, "_post", side_effect=server):
            result = client.fetch_accounts_and_transactions(
                "access-token", max_transactions=100_000
            )

        assert len(server.transaction_requests) == MAX_PAGES == 10
        assert len(result.transactions) == 5000
        assert result.metadata.request_count == 10

    def test_stops_at_page_cap_with_short_full_pages(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=999999, page_size=100)

        with patch.object(client, "_post", side_effect=server):
            result = client.fetch_accounts_and_transactions(
                "access-token", max_transactions=2000
            )

        assert len(server.transaction_requests) == 10
        assert len(result.transactions) == 1000

    def test_never_requests_more_than_max_transactions(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=1200)

        with patch.object(client, "_post", side_effect=server):
            result = client.fetch_accounts_and_transactions(
                "access-token", max_transactions=700
            )

        assert server.requested_counts == [500, 200]
        assert len(result.transactions) == 700
        assert result.metadata.total_available == 1200

    def test_empty_page_stops_paging(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=50, page_size=0)

        with patch.object(client, "_post", side_effect=server):
            result = client.fetch_accounts_and_transactions("access-token")

        assert len(server.transaction_requests) == 1
        assert result.transactions == []

    def test_offsets_advance_by_records_received(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=250, page_size=100)

        with patch.object(client, "_post", side_effect=server):
            client.fetch_accounts_and_transactions("access-token")

        offsets = [p["options"]["offset"] for p in server.transaction_requests]
        assert offsets == [0, 100, 200]

    def test_date_window(self) -> None:
        # input
        today = date(2024, 1, 31)

        # setup
        client = create_client()
        server = FakePlaidServer(total=0)

        with patch.object(client, "_post", side_effect=server):
            # act
            result = client.fetch_accounts_and_transactions(
                "access-token", days_back=30, today=today
            )

        # assert
        payload = server.transaction_requests[0]
        assert payload["start_date"] == "2024-01-01"
        assert payload["end_date"] == "2024-01-31"
        assert result.metadata.start_date == "2024-01-01"
        assert result.metadata.days_back == 30

    def test_transactions_failure_returns_accounts_only(self) -> None:
        client = create_client()
        server = FakePlaidServer(total=10, fail_transactions=True)

        with patch.object(client, "_post", side_effect=server):
            result = client.fetch_accounts_and_transactions("access-token")

        assert result.degraded
        assert [a.account_id for a in result.accounts] == ["acc_1"]
        assert result.transactions == []
        assert result.metadata.error is not None
        assert "boom" in result.metadata.error

    def test_accounts_failure_raises(self) -> None:
        client = create_client()

        def fail(path: str, payload: dict[str, Any], *, operation: str) -> Any:
            raise AggregatorError(
                "item login required",
                code="ITEM_LOGIN_REQUIRED",
                http_status=400,
                operation=operation,
            )

        with patch.object(client, "_post", side_effect=fail):
            with pytest.raises(AggregatorError) as exc_info:
                client.fetch_accounts_and_transactions("access-token")

        assert exc_info.value.code == "ITEM_LOGIN_REQUIRED"
        assert exc_info.value.http_status == 400
        assert exc_info.value.operation == "accounts get"


class TestFromEnv:
    def test_from_env_reads_credentials_and_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PLAID_CLIENT_ID", "cid")
        monkeypatch.setenv("PLAID_SECRET_KEY", "sec")
        monkeypatch.setenv("PLAID_ENV", "production")

        client = PlaidClient.from_env()

        assert client.env == "production"

    def test_from_env_rejects_unknown_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PLAID_CLIENT_ID", "cid")
        monkeypatch.setenv("PLAID_SECRET_KEY", "sec")
        monkeypatch.setenv("PLAID_ENV", "staging")

        with pytest.raises(ValueError, match="PLAID_ENV"):
            PlaidClient.from_env()

    def test_from_env_without_credentials_raises(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("PLAID_CLIENT_ID", raising=False)
        monkeypatch.delenv("PLAID_SECRET_KEY", raising=False)

        with pytest.raises(CredentialsMissing) as exc_info:
            PlaidClient.from_env()

        assert exc_info.value.missing == ["PLAID_CLIENT_ID", "PLAID_SECRET_KEY"]
