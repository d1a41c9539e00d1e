from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from loguru import logger
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from moneyspread.adapters.db.models import (
    Account,
    AccountUpsert,
    Base,
    Budget,
    Category,
    CategorySpend,
    Transaction,
    TransactionUpsert,
    TransactionUpsertOutcome,
    UserPreferences,
)
from moneyspread.taxonomy.core import Taxonomy

UNCATEGORIZED = "Uncategorized"

_PREFERENCE_FIELDS = ("auto_categorize", "default_currency", "notifications_enabled")


class PersistenceError(Exception):
    """Raised when a read or write against the local store fails."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {message}" if message else operation)


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class DB:
    """User-scoped persistence for accounts, transactions and categories."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///moneyspread.db")
        """
        self._url = url
        connect_args: dict[str, Any] = {}
        engine_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # Account upserts run on worker threads during a sync.
            connect_args["check_same_thread"] = False
            if make_url(url).database in (None, "", ":memory:"):
                # Every thread must see the same in-memory database.
                engine_args["poolclass"] = StaticPool
        self._engine = create_engine(
            url, echo=False, connect_args=connect_args, **engine_args
        )
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def url(self) -> str:
        return self._url

    @contextmanager
    def session(self, operation: str = "database operation") -> Iterator[Session]:
        """Context manager for database sessions.

        Commits on success, rolls back on any error. SQLAlchemy errors are
        re-raised as PersistenceError tagged with ``operation``.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.bind(operation=operation).error(
                "Database error during {}: {}", operation, e
            )
            raise PersistenceError(operation, str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError("create schema", str(e)) from e

    def _insert(self, model: type[Base]) -> Any:
        """Return a dialect insert construct that supports ON CONFLICT."""
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise PersistenceError("upsert", f"unsupported dialect {dialect!r}")

    # Accounts -------------------------------------------------------------

    def list_accounts(self, user_id: str) -> list[Account]:
        """Return active accounts, most recently connected first."""
        with self.session("list accounts") as session:
            accounts = list(
                session.scalars(
                    select(Account)
                    .where(Account.user_id == user_id, Account.is_active.is_(True))
                    .order_by(Account.connected_at.desc(), Account.id.desc())
                )
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    def upsert_account(self, user_id: str, account: AccountUpsert) -> Account:
        """Insert or update an account keyed on (external_account_id, user_id).

        ``connected_at`` is only written on first insert. Every later call
        refreshes the mutable fields and ``last_synced_at`` and re-activates
        the row.

        Returns:
            The stored Account including its internal id
        """
        now = _utcnow()
        stmt = self._insert(Account).values(
            external_account_id=account.external_account_id,
            user_id=user_id,
            bank_name=account.bank_name,
            account_type=account.account_type,
            account_number=account.account_number,
            balance=account.balance,
            currency=account.currency,
            provider=account.provider,
            connected_at=now,
            last_synced_at=now,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["external_account_id", "user_id"],
            set_={
                "bank_name": stmt.excluded.bank_name,
                "account_type": stmt.excluded.account_type,
                "account_number": stmt.excluded.account_number,
                "balance": stmt.excluded.balance,
                "currency": stmt.excluded.currency,
                "provider": stmt.excluded.provider,
                "last_synced_at": stmt.excluded.last_synced_at,
                "is_active": True,
                "updated_at": now,
            },
        )
        with self.session("upsert account") as session:
            stored = session.scalars(
                stmt.returning(Account),
                execution_options={"populate_existing": True},
            ).one()
            session.expunge(stored)
            return stored

    def deactivate_account(self, user_id: str, account_id: int) -> None:
        """Soft-delete an account. Its transactions drop out of all queries."""
        with self.session("deactivate account") as session:
            result = session.execute(
                update(Account)
                .where(Account.id == account_id, Account.user_id == user_id)
                .values(is_active=False, updated_at=_utcnow())
            )
            if result.rowcount == 0:
                raise PersistenceError(
                    "deactivate account", f"account {account_id} not found"
                )

    def total_balance(self, user_id: str) -> float:
        """Sum of balances across active accounts."""
        with self.session("total balance") as session:
            total = session.scalar(
                select(func.coalesce(func.sum(Account.balance), 0.0)).where(
                    Account.user_id == user_id, Account.is_active.is_(True)
                )
            )
            return float(total or 0.0)

    # Transactions ---------------------------------------------------------

    def list_transactions(
        self, user_id: str, account_id: int | None = None
    ) -> list[Transaction]:
        """Return transactions on active accounts, newest date first."""
        query = (
            select(Transaction)
            .join(Account, Transaction.account_id == Account.id)
            .where(Transaction.user_id == user_id, Account.is_active.is_(True))
        )
        if account_id is not None:
            query = query.where(Transaction.account_id == account_id)
        query = query.order_by(Transaction.date.desc(), Transaction.id.desc())

        with self.session("list transactions") as session:
            transactions = list(session.scalars(query))
            for txn in transactions:
                session.expunge(txn)
            return transactions

    def get_transactions_by_ids(
        self, user_id: str, ids: Sequence[int]
    ) -> list[Transaction]:
        """Fetch transactions by id, preserving input order."""
        if not ids:
            return []
        with self.session("get transactions") as session:
            found = list(
                session.scalars(
                    select(Transaction).where(
                        Transaction.user_id == user_id, Transaction.id.in_(ids)
                    )
                )
            )
            for txn in found:
                session.expunge(txn)
        by_id = {txn.id: txn for txn in found}
        return [by_id[tid] for tid in ids if tid in by_id]

    def upsert_transactions(
        self, user_id: str, rows: Sequence[TransactionUpsert]
    ) -> TransactionUpsertOutcome:
        """Bulk insert-or-update keyed on (external_transaction_id, account_id).

        Safe to call repeatedly with overlapping input. On conflict the
        description, amount, date and merchant are overwritten; an existing
        category_name is kept and ``is_manual_category`` is never touched.

        Returns:
            TransactionUpsertOutcome with the stored rows and the ids of rows
            that did not exist before this call
        """
        if not rows:
            return TransactionUpsertOutcome(rows=[])
        # One statement cannot touch the same row twice; the last copy wins.
        rows = list(
            {(r.external_transaction_id, r.account_id): r for r in rows}.values()
        )

        existing_keys = self._existing_transaction_keys(rows)

        now = _utcnow()
        values = [
            {
                "account_id": row.account_id,
                "external_transaction_id": row.external_transaction_id,
                "user_id": user_id,
                "description": row.description,
                "amount": row.amount,
                "date": row.date,
                "merchant": row.merchant,
                "category_name": row.category_name,
                "is_manual_category": False,
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]
        stmt = self._insert(Transaction).values(values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["external_transaction_id", "account_id"],
            set_={
                "description": stmt.excluded.description,
                "amount": stmt.excluded.amount,
                "date": stmt.excluded.date,
                "merchant": stmt.excluded.merchant,
                "category_name": func.coalesce(
                    Transaction.__table__.c.category_name,
                    stmt.excluded.category_name,
                ),
                "updated_at": now,
            },
        )
        with self.session("upsert transactions") as session:
            stored = list(
                session.scalars(
                    stmt.returning(Transaction),
                    execution_options={"populate_existing": True},
                )
            )
            for txn in stored:
                session.expunge(txn)

        # RETURNING order is not guaranteed; report rows in input order.
        position = {
            (row.external_transaction_id, row.account_id): i
            for i, row in enumerate(rows)
        }
        stored.sort(key=lambda t: position[(t.external_transaction_id, t.account_id)])
        inserted_ids = [
            txn.id
            for txn in stored
            if (txn.external_transaction_id, txn.account_id) not in existing_keys
        ]
        return TransactionUpsertOutcome(rows=stored, inserted_ids=inserted_ids)

    def _existing_transaction_keys(
        self, rows: Sequence[TransactionUpsert]
    ) -> set[tuple[str, int]]:
        external_ids = {row.external_transaction_id for row in rows}
        account_ids = {row.account_id for row in rows}
        with self.session("look up existing transactions") as session:
            found = session.execute(
                select(
                    Transaction.external_transaction_id, Transaction.account_id
                ).where(
                    Transaction.external_transaction_id.in_(external_ids),
                    Transaction.account_id.in_(account_ids),
                )
            ).all()
        return {(ext_id, acct_id) for ext_id, acct_id in found}

    def set_category(
        self, user_id: str, transaction_id: int, category_name: str
    ) -> None:
        """Set a user-chosen category. Automated categorization skips it after."""
        with self.session("set category") as session:
            result = session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id, Transaction.user_id == user_id
                )
                .values(
                    category_name=category_name,
                    is_manual_category=True,
                    updated_at=_utcnow(),
                )
            )
            if result.rowcount == 0:
                raise PersistenceError(
                    "set category", f"transaction {transaction_id} not found"
                )

    def apply_automatic_category(
        self, user_id: str, transaction_id: int, category_name: str
    ) -> bool:
        """Write a machine-assigned category unless the row is manual.

        Returns:
            True if the row was updated, False if it was manually categorized
            (or does not exist)
        """
        with self.session("apply automatic category") as session:
            result = session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.user_id == user_id,
                    Transaction.is_manual_category.is_(False),
                )
                .values(category_name=category_name, updated_at=_utcnow())
            )
            return result.rowcount == 1

    def list_uncategorized_transaction_ids(
        self, user_id: str, category_names: Sequence[str]
    ) -> list[int]:
        """Ids of non-manual rows on active accounts whose category is not
        one of ``category_names`` (including rows with no category)."""
        with self.session("list uncategorized transactions") as session:
            return list(
                session.scalars(
                    select(Transaction.id)
                    .join(Account, Transaction.account_id == Account.id)
                    .where(
                        Transaction.user_id == user_id,
                        Account.is_active.is_(True),
                        Transaction.is_manual_category.is_(False),
                        Transaction.category_name.is_(None)
                        | Transaction.category_name.not_in(list(category_names)),
                    )
                    .order_by(Transaction.id)
                )
            )

    def spending_by_category(self, user_id: str) -> list[CategorySpend]:
        """Outflow totals per category over active accounts, largest first."""
        category = func.coalesce(Transaction.category_name, UNCATEGORIZED)
        with self.session("spending by category") as session:
            grouped = session.execute(
                select(
                    category.label("category_name"),
                    func.sum(-Transaction.amount).label("total"),
                    func.count(Transaction.id).label("count"),
                )
                .join(Account, Transaction.account_id == Account.id)
                .where(
                    Transaction.user_id == user_id,
                    Account.is_active.is_(True),
                    Transaction.amount < 0,
                )
                .group_by(category)
            ).all()

        grand_total = sum(float(row.total) for row in grouped)
        spends = [
            CategorySpend(
                category_name=row.category_name,
                total=round(float(row.total), 2),
                count=int(row.count),
                percentage=(
                    round(float(row.total) / grand_total * 100, 2)
                    if grand_total
                    else 0.0
                ),
            )
            for row in grouped
        ]
        spends.sort(key=lambda s: (-s.total, s.category_name))
        return spends

    # Categories -----------------------------------------------------------

    def seed_default_categories(self, taxonomy: Taxonomy) -> int:
        """Insert the taxonomy labels as default categories if missing.

        Returns:
            Number of categories created
        """
        with self.session("seed default categories") as session:
            existing = set(
                session.scalars(
                    select(Category.name).where(Category.user_id.is_(None))
                )
            )
            created = 0
            for node in taxonomy.all_nodes():
                if node.name in existing:
                    continue
                session.add(
                    Category(
                        name=node.name,
                        color=node.color,
                        is_default=True,
                        user_id=None,
                    )
                )
                created += 1
            return created

    def list_categories(self, user_id: str) -> list[Category]:
        """Defaults plus the user's own categories, defaults first."""
        with self.session("list categories") as session:
            categories = list(
                session.scalars(
                    select(Category)
                    .where(
                        (Category.user_id == user_id) | Category.user_id.is_(None)
                    )
                    .order_by(Category.is_default.desc(), Category.name)
                )
            )
            for category in categories:
                session.expunge(category)
            return categories

    def save_category(
        self, user_id: str, name: str, color: str | None = None
    ) -> Category:
        """Create a user-defined category."""
        with self.session("save category") as session:
            clash = session.scalar(
                select(Category.id).where(
                    Category.name == name,
                    (Category.user_id == user_id) | Category.user_id.is_(None),
                )
            )
            if clash is not None:
                raise PersistenceError("save category", f"{name!r} already exists")
            category = Category(
                name=name, color=color, is_default=False, user_id=user_id
            )
            session.add(category)
            session.flush()
            session.refresh(category)
            session.expunge(category)
            return category

    # Budgets --------------------------------------------------------------

    def list_budgets(self, user_id: str) -> list[Budget]:
        with self.session("list budgets") as session:
            budgets = list(
                session.scalars(
                    select(Budget)
                    .where(Budget.user_id == user_id)
                    .order_by(Budget.category_name)
                )
            )
            for budget in budgets:
                session.expunge(budget)
            return budgets

    def seed_default_budgets(self, user_id: str, defaults: Mapping[str, float]) -> int:
        """Give a user the default budgets if they have none yet.

        A user who already has any budget keeps exactly what they set.

        Returns:
            Number of budgets created
        """
        with self.session("seed default budgets") as session:
            has_budgets = session.scalar(
                select(func.count(Budget.id)).where(Budget.user_id == user_id)
            )
            if has_budgets:
                return 0
            now = _utcnow()
            for category_name, amount in defaults.items():
                session.add(
                    Budget(
                        user_id=user_id,
                        category_name=category_name,
                        budget_amount=amount,
                        created_at=now,
                        updated_at=now,
                    )
                )
            return len(defaults)

    def set_budget(self, user_id: str, category_name: str, amount: float) -> Budget:
        """Create or change the budget for one category.

        Raises:
            ValueError: If ``amount`` is not positive
        """
        if amount <= 0:
            raise ValueError(f"Budget must be a positive amount, got {amount}")

        now = _utcnow()
        stmt = self._insert(Budget).values(
            user_id=user_id,
            category_name=category_name,
            budget_amount=amount,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "category_name"],
            set_={"budget_amount": stmt.excluded.budget_amount, "updated_at": now},
        )
        with self.session("set budget") as session:
            stored = session.scalars(
                stmt.returning(Budget),
                execution_options={"populate_existing": True},
            ).one()
            session.expunge(stored)
            return stored

    def budget_for_category(self, user_id: str, category_name: str) -> float:
        """Budget amount for a category, matched case-insensitively; 0 if unset."""
        with self.session("budget for category") as session:
            amount = session.scalar(
                select(Budget.budget_amount).where(
                    Budget.user_id == user_id,
                    func.lower(Budget.category_name) == category_name.lower(),
                )
            )
            return float(amount) if amount is not None else 0.0

    # User preferences -----------------------------------------------------

    def get_user_preferences(self, user_id: str) -> UserPreferences | None:
        with self.session("get user preferences") as session:
            prefs = session.scalar(
                select(UserPreferences).where(UserPreferences.user_id == user_id)
            )
            if prefs:
                session.expunge(prefs)
            return prefs

    def save_user_preferences(self, user_id: str, **fields: Any) -> UserPreferences:
        """Create or update preferences for a user.

        Args:
            user_id: Owning user
            **fields: Any of auto_categorize, default_currency,
                notifications_enabled

        Raises:
            ValueError: If an unknown preference name is passed
        """
        unknown = set(fields) - set(_PREFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")

        with self.session("save user preferences") as session:
            prefs = session.scalar(
                select(UserPreferences).where(UserPreferences.user_id == user_id)
            )
            if prefs is None:
                prefs = UserPreferences(user_id=user_id)
                session.add(prefs)
            for key, value in fields.items():
                setattr(prefs, key, value)
            prefs.updated_at = _utcnow()
            session.flush()
            session.refresh(prefs)
            session.expunge(prefs)
            return prefs
