from __future__ import annotations

import asyncio

import pytest

from moneyspread.infra.clients.link_flow import LinkFlow, LinkFlowError, LinkState
from moneyspread.infra.clients.plaid import AggregatorError


class FakeLinkApi:
    def __init__(self, *, fail_exchange: bool = False) -> None:
        self._fail_exchange = fail_exchange
        self.link_users: list[str] = []
        self.exchanged: list[str] = []

    def create_link_token(self, user_id: str) -> str:
        self.link_users.append(user_id)
        return "link-sandbox-1"

    def exchange_public_token(self, public_token: str) -> str:
        self.exchanged.append(public_token)
        if self._fail_exchange:
            raise AggregatorError("bad token", code="INVALID_PUBLIC_TOKEN")
        return "access-sandbox-1"


def create_flow(api: FakeLinkApi) -> LinkFlow:
    return LinkFlow(
        user_id="user-1",
        create_link_token_fn=api.create_link_token,
        exchange_public_token_fn=api.exchange_public_token,
    )


def test_happy_path_reaches_ready() -> None:
    # setup
    api = FakeLinkApi()
    flow = create_flow(api)
    fetched_with: list[str] = []

    async def run(token: str) -> str:
        assert flow.state is LinkState.FETCHING
        fetched_with.append(token)
        return "summary"

    # act
    link_token = flow.create_link_token()
    access_token = flow.exchange("public-sandbox-1")
    result = asyncio.run(flow.fetch(run))

    # assert
    assert link_token == "link-sandbox-1"
    assert access_token == "access-sandbox-1"  # noqa: S105
    assert result == "summary"
    assert fetched_with == ["access-sandbox-1"]
    assert api.link_users == ["user-1"]
    assert flow.state is LinkState.READY


def test_ready_flow_can_fetch_again() -> None:
    flow = create_flow(FakeLinkApi())
    flow.create_link_token()
    flow.exchange("public-sandbox-1")

    async def run(token: str) -> int:
        return 1

    asyncio.run(flow.fetch(run))
    asyncio.run(flow.fetch(run))

    assert flow.state is LinkState.READY


def test_exchange_before_link_token_is_rejected() -> None:
    flow = create_flow(FakeLinkApi())

    with pytest.raises(LinkFlowError, match="IDLE"):
        flow.exchange("public-sandbox-1")

    assert flow.state is LinkState.IDLE


def test_failed_exchange_moves_to_failed_until_reset() -> None:
    # setup
    api = FakeLinkApi(fail_exchange=True)
    flow = create_flow(api)
    flow.create_link_token()

    # act
    with pytest.raises(AggregatorError):
        flow.exchange("public-bad")

    # assert
    assert flow.state is LinkState.FAILED
    assert isinstance(flow.last_error, AggregatorError)
    with pytest.raises(LinkFlowError):
        flow.create_link_token()

    flow.reset()
    assert flow.state is LinkState.IDLE
    assert flow.access_token is None
    assert flow.create_link_token() == "link-sandbox-1"


def test_failed_fetch_moves_to_failed() -> None:
    flow = create_flow(FakeLinkApi())
    flow.create_link_token()
    flow.exchange("public-sandbox-1")

    async def run(token: str) -> None:
        raise RuntimeError("sync failed")

    with pytest.raises(RuntimeError):
        asyncio.run(flow.fetch(run))

    assert flow.state is LinkState.FAILED


def test_fetch_without_access_token_is_rejected() -> None:
    # setup
    flow = LinkFlow(
        user_id="user-1",
        create_link_token_fn=lambda user_id: "link-sandbox-1",
        exchange_public_token_fn=lambda public_token: "",
    )
    calls: list[str] = []

    async def run(token: str) -> str:
        calls.append(token)
        return "summary"

    flow.create_link_token()
    flow.exchange("public-sandbox-1")

    # act
    with pytest.raises(LinkFlowError, match="access token"):
        asyncio.run(flow.fetch(run))

    # assert
    assert calls == []
    assert flow.state is LinkState.EXCHANGED
