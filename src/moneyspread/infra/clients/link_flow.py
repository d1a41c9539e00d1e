"""Bank-link state machine: link token, public token exchange, first fetch."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol, TypeVar

from loguru import logger

T = TypeVar("T")


class LinkFlowError(Exception):
    """Raised when a link operation is attempted from the wrong state."""


class LinkState(Enum):
    IDLE = "idle"
    LINK_CREATED = "link_created"
    EXCHANGED = "exchanged"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


class CreateLinkTokenFn(Protocol):
    """Protocol for create_link_token function signature."""

    def __call__(self, user_id: str) -> str: ...


class ExchangePublicTokenFn(Protocol):
    """Protocol for exchange_public_token function signature."""

    def __call__(self, public_token: str) -> str: ...


class LinkFlow:
    """Drives one bank connection from link token to first successful fetch.

    IDLE -> LINK_CREATED -> EXCHANGED -> FETCHING -> READY, with FAILED
    reachable from any operation that raises. READY allows further fetches.
    """

    def __init__(
        self,
        *,
        user_id: str,
        create_link_token_fn: CreateLinkTokenFn,
        exchange_public_token_fn: ExchangePublicTokenFn,
    ) -> None:
        self._user_id = user_id
        self._create_link_token = create_link_token_fn
        self._exchange_public_token = exchange_public_token_fn
        self._state = LinkState.IDLE
        self._link_token: str | None = None
        self._access_token: str | None = None
        self._last_error: Exception | None = None

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def link_token(self) -> str | None:
        return self._link_token

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    def _require(self, operation: str, *allowed: LinkState) -> None:
        if self._state not in allowed:
            expected = ", ".join(s.name for s in allowed)
            raise LinkFlowError(
                f"Cannot {operation} in state {self._state.name} "
                f"(expected {expected})"
            )

    def _advance(self, state: LinkState) -> None:
        logger.bind(user_id=self._user_id).debug(
            "Link flow {} -> {}", self._state.name, state.name
        )
        self._state = state

    def _fail(self, error: Exception) -> None:
        self._last_error = error
        self._advance(LinkState.FAILED)

    def create_link_token(self) -> str:
        self._require("create link token", LinkState.IDLE)
        try:
            link_token = self._create_link_token(self._user_id)
        except Exception as e:
            self._fail(e)
            raise
        self._link_token = link_token
        self._advance(LinkState.LINK_CREATED)
        return link_token

    def exchange(self, public_token: str) -> str:
        self._require("exchange public token", LinkState.LINK_CREATED)
        try:
            access_token = self._exchange_public_token(public_token)
        except Exception as e:
            self._fail(e)
            raise
        self._access_token = access_token
        self._advance(LinkState.EXCHANGED)
        return access_token

    async def fetch(self, run: Callable[[str], Awaitable[T]]) -> T:
        """Run ``run(access_token)`` as the flow's fetch step.

        ``run`` is typically ``SyncTool.sync``. The flow is READY once it
        returns and FAILED if it raises.
        """
        self._require("fetch", LinkState.EXCHANGED, LinkState.READY)
        if not self._access_token:
            raise LinkFlowError("Cannot fetch without an access token")
        self._advance(LinkState.FETCHING)
        try:
            result = await run(self._access_token)
        except Exception as e:
            self._fail(e)
            raise
        self._advance(LinkState.READY)
        return result

    def reset(self) -> None:
        self._link_token = None
        self._access_token = None
        self._last_error = None
        self._advance(LinkState.IDLE)
