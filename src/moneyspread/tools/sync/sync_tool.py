from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

import loguru
from loguru import logger

from moneyspread.adapters.db.facade import DB, PersistenceError
from moneyspread.adapters.db.models import (
    Account,
    AccountUpsert,
    Transaction,
    TransactionUpsert,
    TransactionUpsertOutcome,
)
from moneyspread.adapters.storage.token_store import TokenStore
from moneyspread.infra.clients.plaid import (
    AggregatorError,
    FetchResult,
    PlaidAccount,
    PlaidClient,
    PlaidTransaction,
)
from moneyspread.tools.base import StandardTool
from moneyspread.tools.categorize.categorizer_tool import Categorizer, TxSummary
from moneyspread.tools.protocol import ToolInputSchema

DEFAULT_BANK_NAME = "Plaid Bank"
DEFAULT_MASK = "0000"
DEFAULT_CURRENCY = "CAD"
DEFAULT_ACCOUNT_TYPE = "other"


class MappingError(Exception):
    """A fetched transaction could not be tied to a stored account."""

    def __init__(self, external_transaction_id: str, reason: str) -> None:
        self.external_transaction_id = external_transaction_id
        super().__init__(f"transaction {external_transaction_id}: {reason}")


class SyncError(Exception):
    """A sync failed. ``stage`` names the step that failed."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"Sync failed during {stage}: {message}")


@dataclass
class SyncSummary:
    accounts: int
    transactions: int
    inserted: int
    dropped: int
    total_available: int
    fetched: int
    pages: int
    error: str | None
    categorization_scheduled: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def map_account(account: PlaidAccount) -> AccountUpsert:
    """Map a Plaid account onto local account fields."""
    balances = account.balances
    return AccountUpsert(
        external_account_id=account.account_id,
        bank_name=account.name or DEFAULT_BANK_NAME,
        account_type=account.subtype or account.type or DEFAULT_ACCOUNT_TYPE,
        account_number=f"****{account.mask or DEFAULT_MASK}",
        balance=balances.current if balances.current is not None else 0.0,
        currency=balances.iso_currency_code or DEFAULT_CURRENCY,
    )


def map_transaction(txn: PlaidTransaction, account_id: int) -> TransactionUpsert:
    """Map a Plaid transaction onto local fields.

    Plaid reports money leaving the account as positive; locally inflows are
    positive, so the amount is negated.

    Raises:
        MappingError: If the transaction date is not an ISO date
    """
    try:
        txn_date = date.fromisoformat(txn.date)
    except ValueError as e:
        raise MappingError(txn.transaction_id, f"invalid date {txn.date!r}") from e
    return TransactionUpsert(
        account_id=account_id,
        external_transaction_id=txn.transaction_id,
        description=txn.name,
        amount=-txn.amount,
        date=txn_date,
        merchant=txn.merchant_name,
        category_name=txn.category[0] if txn.category else None,
    )


def remove_account(
    db: DB, token_store: TokenStore, user_id: str, account_id: int
) -> bool:
    """
    Deactivate an account, clearing the stored access token once no active
    account is left.

    Returns:
        True if the access token was cleared
    """
    db.deactivate_account(user_id, account_id)
    if db.list_accounts(user_id):
        return False
    token_store.clear()
    logger.bind(user_id=user_id).info(
        "No active accounts left for {}; cleared access token", user_id
    )
    return True


class SyncToolLogger:
    """Handles all logging for SyncTool with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def already_running(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).info(
            "Sync already in progress for {}; ignoring request", user_id
        )

    def sync_start(self, user_id: str, days_back: int, max_transactions: int) -> None:
        self._logger.bind(user_id=user_id).info(
            "Starting sync for {} ({} days, max {} transactions)",
            user_id,
            days_back,
            max_transactions,
        )

    def fetch_complete(self, result: FetchResult) -> None:
        self._logger.bind(
            accounts=len(result.accounts),
            transactions=len(result.transactions),
            degraded=result.degraded,
        ).info(
            "Fetched {} accounts and {} transactions",
            len(result.accounts),
            len(result.transactions),
        )

    def account_upsert_failed(self, external_account_id: str, error: Exception) -> None:
        self._logger.bind(external_account_id=external_account_id).error(
            "Failed to store account {}: {}", external_account_id, error
        )

    def transaction_dropped(self, error: MappingError) -> None:
        self._logger.bind(
            external_transaction_id=error.external_transaction_id
        ).warning("Dropping {}", error)

    def persistence_complete(self, outcome: TransactionUpsertOutcome) -> None:
        self._logger.bind(inserted=outcome.inserted, updated=outcome.updated).info(
            "Stored transactions: {} new, {} updated",
            outcome.inserted,
            outcome.updated,
        )

    def categorization_scheduled(self, count: int, delay: float) -> None:
        self._logger.bind(count=count).info(
            "Scheduling categorization of {} transactions in {}s", count, delay
        )

    def categorization_disabled(self, user_id: str) -> None:
        self._logger.bind(user_id=user_id).info(
            "Auto-categorization disabled for {}", user_id
        )

    def categorization_complete(self, applied: int, total: int) -> None:
        self._logger.bind(applied=applied, total=total).info(
            "Background categorization applied {} of {} categories", applied, total
        )

    def categorization_failed(self, error: Exception) -> None:
        self._logger.bind(error_type=type(error).__name__).error(
            "Background categorization failed: {}", error
        )


class SyncTool:
    """
    Pulls accounts and transactions from Plaid into the local store and
    categorizes new or still uncategorized transactions in the background.
    """

    def __init__(
        self,
        plaid_client: PlaidClient,
        categorizer: Categorizer,
        db: DB,
        token_store: TokenStore,
        *,
        user_id: str,
        categorization_delay: float = 0.5,
    ) -> None:
        """
        Initialize the sync tool.

        Args:
            plaid_client: Plaid client instance
            categorizer: Categorizer used for background categorization
            db: Database instance for persisting accounts and transactions
            token_store: Holds the Plaid access token between syncs
            user_id: Owner of every row this tool writes
            categorization_delay: Seconds to wait before categorizing
        """
        self._plaid_client = plaid_client
        self._categorizer = categorizer
        self._db = db
        self._token_store = token_store
        self._user_id = user_id
        self._categorization_delay = categorization_delay
        self._in_flight = False
        self._categorization_task: asyncio.Task[int] | None = None
        self._pending: set[asyncio.Task[int]] = set()
        self._logger = SyncToolLogger()
        self.accounts: list[Account] = []
        self.transactions: list[Transaction] = []

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def categorization_task(self) -> asyncio.Task[int] | None:
        """Most recently scheduled background categorization, if any."""
        return self._categorization_task

    async def sync(
        self,
        access_token: str | None = None,
        *,
        days_back: int = 90,
        max_transactions: int = 2000,
    ) -> SyncSummary | None:
        """
        Run one sync cycle.

        Args:
            access_token: Token to use; saved to the token store. Falls back
                to the stored token when omitted.
            days_back: Size of the fetch window in days
            max_transactions: Upper bound on transactions fetched

        Returns:
            SyncSummary, or None if another sync is already running

        Raises:
            SyncError: If the token is missing or fetching, mapping or
                persisting fails
        """
        if self._in_flight:
            self._logger.already_running(self._user_id)
            return None

        self._in_flight = True
        try:
            return await self._sync(
                access_token, days_back=days_back, max_transactions=max_transactions
            )
        finally:
            self._in_flight = False

    async def _sync(
        self, access_token: str | None, *, days_back: int, max_transactions: int
    ) -> SyncSummary:
        token = self._resolve_token(access_token)
        self._logger.sync_start(self._user_id, days_back, max_transactions)

        try:
            result = await asyncio.to_thread(
                self._plaid_client.fetch_accounts_and_transactions,
                token,
                days_back=days_back,
                max_transactions=max_transactions,
            )
        except AggregatorError as e:
            raise SyncError("fetch", str(e)) from e
        self._logger.fetch_complete(result)

        try:
            account_ids = await self._upsert_accounts(result.accounts)
            rows, dropped = self._map_transactions(result.transactions, account_ids)
            outcome = await asyncio.to_thread(
                self._db.upsert_transactions, self._user_id, rows
            )
            # Rows a previous run never got to are picked up again here.
            leftover = await asyncio.to_thread(
                self._db.list_uncategorized_transaction_ids,
                self._user_id,
                self._categorizer.taxonomy.names(),
            )
        except PersistenceError as e:
            raise SyncError(e.operation, str(e)) from e
        self._logger.persistence_complete(outcome)

        to_categorize = list(dict.fromkeys([*outcome.inserted_ids, *leftover]))
        scheduled = self._schedule_categorization(to_categorize)

        try:
            self.refresh()
        except PersistenceError as e:
            raise SyncError(e.operation, str(e)) from e

        return SyncSummary(
            accounts=len(account_ids),
            transactions=len(outcome.rows),
            inserted=outcome.inserted,
            dropped=dropped,
            total_available=result.metadata.total_available,
            fetched=result.metadata.total_transactions,
            pages=result.metadata.request_count,
            error=result.metadata.error,
            categorization_scheduled=scheduled,
        )

    def _resolve_token(self, access_token: str | None) -> str:
        if access_token:
            self._token_store.set(access_token)
            return access_token
        stored = self._token_store.get()
        if not stored:
            raise SyncError("token", "no access token; link a bank account first")
        return stored

    async def _upsert_accounts(self, accounts: list[PlaidAccount]) -> dict[str, int]:
        """Upsert all accounts concurrently and wait for every one to finish.

        Returns:
            Mapping of Plaid account_id to local account id for the accounts
            that were stored
        """
        results = await asyncio.gather(
            *(
                asyncio.to_thread(
                    self._db.upsert_account, self._user_id, map_account(account)
                )
                for account in accounts
            ),
            return_exceptions=True,
        )

        account_ids: dict[str, int] = {}
        for account, result in zip(accounts, results, strict=True):
            if isinstance(result, PersistenceError):
                self._logger.account_upsert_failed(account.account_id, result)
                continue
            if isinstance(result, BaseException):
                raise result
            account_ids[account.account_id] = result.id
        return account_ids

    def _map_transactions(
        self, transactions: list[PlaidTransaction], account_ids: dict[str, int]
    ) -> tuple[list[TransactionUpsert], int]:
        rows: list[TransactionUpsert] = []
        dropped = 0
        for txn in transactions:
            try:
                account_id = account_ids.get(txn.account_id)
                if account_id is None:
                    raise MappingError(
                        txn.transaction_id, f"unknown account {txn.account_id}"
                    )
                rows.append(map_transaction(txn, account_id))
            except MappingError as e:
                self._logger.transaction_dropped(e)
                dropped += 1
        return rows, dropped

    def _schedule_categorization(self, transaction_ids: list[int]) -> bool:
        if not transaction_ids:
            return False

        try:
            prefs = self._db.get_user_preferences(self._user_id)
        except PersistenceError as e:
            self._logger.categorization_failed(e)
            return False
        if prefs is not None and not prefs.auto_categorize:
            self._logger.categorization_disabled(self._user_id)
            return False

        self._logger.categorization_scheduled(
            len(transaction_ids), self._categorization_delay
        )
        task = asyncio.create_task(self._categorize_later(list(transaction_ids)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self._categorization_task = task
        return True

    async def _categorize_later(self, transaction_ids: list[int]) -> int:
        """Categorize the given rows after the configured delay.

        Best-effort: any failure is logged and the task resolves to 0.

        Returns:
            Number of rows whose category was written
        """
        await asyncio.sleep(self._categorization_delay)
        try:
            rows = await asyncio.to_thread(
                self._db.get_transactions_by_ids, self._user_id, transaction_ids
            )
            summaries = [
                TxSummary(
                    description=row.description,
                    amount=row.amount,
                    merchant=row.merchant,
                    transaction_id=row.id,
                    is_manual_category=row.is_manual_category,
                )
                for row in rows
            ]
            categorized = await self._categorizer.categorize(summaries)

            applied = 0
            for item in categorized:
                if item.txn.transaction_id is None:
                    continue
                # Rows made manual since the sync are skipped by the store.
                if await asyncio.to_thread(
                    self._db.apply_automatic_category,
                    self._user_id,
                    item.txn.transaction_id,
                    item.category,
                ):
                    applied += 1
        except Exception as e:
            self._logger.categorization_failed(e)
            return 0

        self._logger.categorization_complete(applied, len(categorized))
        return applied

    async def wait_for_categorization(self) -> int:
        """Wait for every scheduled categorization; return rows categorized."""
        if not self._pending:
            return 0
        results = await asyncio.gather(*list(self._pending), return_exceptions=True)
        return sum(r for r in results if isinstance(r, int))

    async def close(self) -> None:
        """Cancel any background categorization still pending."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def refresh(self) -> None:
        """Reload the in-memory mirror of active accounts and transactions."""
        self.accounts = self._db.list_accounts(self._user_id)
        self.transactions = self._db.list_transactions(self._user_id)

    def set_category(self, transaction_id: int, category_name: str) -> None:
        """Record a user-chosen category and refresh the mirror."""
        self._db.set_category(self._user_id, transaction_id, category_name)
        self.refresh()

    def remove_account(self, account_id: int) -> bool:
        """Deactivate an account; see remove_account."""
        cleared = remove_account(
            self._db, self._token_store, self._user_id, account_id
        )
        self.refresh()
        return cleared


class SyncTransactionsTool(StandardTool):
    """
    Tool wrapper for syncing transactions via Plaid.

    Exposes SyncTool through the standard Tool protocol so any frontend can
    trigger a sync and get a JSON-serializable status back.
    """

    _name = "sync_transactions"
    _description = (
        "Fetch accounts and recent transactions from Plaid, store them, and "
        "categorize any that still lack a category."
    )
    _input_schema: ToolInputSchema = {
        "type": "object",
        "properties": {
            "days_back": {
                "type": "integer",
                "description": "Number of days of history to fetch (default 90)",
            },
            "max_transactions": {
                "type": "integer",
                "description": "Upper bound on transactions fetched (default 2000)",
            },
        },
        "required": [],
    }

    def __init__(self, sync_tool: SyncTool) -> None:
        self._sync_tool = sync_tool

    async def _execute_impl(self, **kwargs: Any) -> dict[str, Any]:
        """
        Run a sync, wait for its categorization, and return a summary dict.

        Returns:
            JSON-serializable dict with "status" ("success", "skipped" or
            "error"). On success it carries the SyncSummary fields plus
            "categorized", the number of rows categorized.
        """
        try:
            summary = await self._sync_tool.sync(
                days_back=int(kwargs.get("days_back", 90)),
                max_transactions=int(kwargs.get("max_transactions", 2000)),
            )
        except SyncError as e:
            return {"status": "error", "stage": e.stage, "error": str(e)}

        if summary is None:
            return {"status": "skipped", "reason": "sync already in progress"}
        categorized = await self._sync_tool.wait_for_categorization()
        return {"status": "success", **summary.to_dict(), "categorized": categorized}
