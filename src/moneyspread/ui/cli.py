from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
import typer

from moneyspread.adapters.db.facade import DB, PersistenceError
from moneyspread.adapters.storage.token_store import FileTokenStore
from moneyspread.core.config import AppConfig, load_app_config_from_env
from moneyspread.infra.clients.credentials import (
    CredentialsMissing,
    require_credentials,
)
from moneyspread.infra.clients.link_flow import LinkFlow, LinkFlowError
from moneyspread.infra.clients.plaid import AggregatorError, PlaidClient
from moneyspread.taxonomy.loader import default_taxonomy
from moneyspread.tools.categorize.categorizer_tool import Categorizer
from moneyspread.tools.sync.sync_tool import (
    SyncError,
    SyncSummary,
    SyncTool,
    remove_account,
)

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="MoneySpread - pull bank transactions from Plaid and categorize them.",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

_HANDLED_ERRORS = (
    SyncError,
    AggregatorError,
    CredentialsMissing,
    PersistenceError,
    LinkFlowError,
    ValueError,
)


@dataclass
class _Context:
    config: AppConfig
    db: DB
    token_store: FileTokenStore


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn expected failures into one red line and exit code 1."""
    try:
        yield
    except _HANDLED_ERRORS as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


def _context() -> _Context:
    config = load_app_config_from_env()
    db = DB(config.database_url)
    db.create_schema()
    return _Context(config=config, db=db, token_store=FileTokenStore(config.token_file))


def _check_category(ctx: _Context, category: str) -> None:
    known = {c.name for c in ctx.db.list_categories(ctx.config.user_id)}
    known.update(default_taxonomy().names())
    if category not in known:
        raise ValueError(f"Unknown category {category!r}")


def _plaid_client(config: AppConfig) -> PlaidClient:
    return PlaidClient(credentials=require_credentials(), env=config.plaid_env)


def _sync_tool(ctx: _Context, plaid_client: PlaidClient) -> SyncTool:
    categorizer = Categorizer.from_env(model=ctx.config.categorizer_model)
    return SyncTool(
        plaid_client,
        categorizer,
        ctx.db,
        ctx.token_store,
        user_id=ctx.config.user_id,
        categorization_delay=ctx.config.categorization_delay,
    )


def _print_summary(summary: SyncSummary) -> None:
    console.print(
        f"Synced [bold]{summary.accounts}[/bold] accounts and "
        f"[bold]{summary.transactions}[/bold] transactions "
        f"({summary.inserted} new, {summary.dropped} dropped, "
        f"{summary.fetched} of {summary.total_available} fetched "
        f"in {summary.pages} requests)"
    )
    if summary.error:
        console.print(f"[yellow]Warning:[/yellow] {summary.error}")


async def _run_sync(
    tool: SyncTool,
    access_token: str | None,
    *,
    days_back: int,
    max_transactions: int,
) -> SyncSummary | None:
    """Sync, report, then wait for categorization before the loop closes."""
    try:
        summary = await tool.sync(
            access_token, days_back=days_back, max_transactions=max_transactions
        )
        if summary is None:
            console.print("A sync is already running.")
            return None
        _print_summary(summary)
        if summary.categorization_scheduled:
            with console.status("Categorizing transactions..."):
                categorized = await tool.wait_for_categorization()
            console.print(f"Categorized {categorized} transactions")
        return summary
    finally:
        await tool.close()


@app.command("init-db")
def init_db() -> None:
    """Create tables and seed the default categories and budgets."""
    with _reported_errors():
        ctx = _context()
        taxonomy = default_taxonomy()
        created = ctx.db.seed_default_categories(taxonomy)
        budgets = ctx.db.seed_default_budgets(
            ctx.config.user_id, taxonomy.default_budgets()
        )
    console.print(
        f"Database ready at {ctx.config.database_url} "
        f"({created} categories added, {budgets} budgets added)"
    )


@app.command("link-token")
def link_token() -> None:
    """Create a Plaid Link token for connecting a bank in Plaid Link."""
    with _reported_errors():
        ctx = _context()
        token = _plaid_client(ctx.config).create_link_token(ctx.config.user_id)
    console.print(token)


@app.command("exchange")
def exchange(public_token: str) -> None:
    """Exchange a public token from Plaid Link and store the access token."""
    with _reported_errors():
        ctx = _context()
        access_token = _plaid_client(ctx.config).exchange_public_token(public_token)
        ctx.token_store.set(access_token)
    console.print("[green]Bank connected.[/green] Run `moneyspread sync` next.")


@app.command("link")
def link(
    days_back: int = typer.Option(90, help="Days of history to fetch"),
    max_transactions: int = typer.Option(2000, help="Maximum transactions to fetch"),
) -> None:
    """Connect a bank end to end: link token, public token exchange, first sync."""
    with _reported_errors():
        ctx = _context()
        plaid_client = _plaid_client(ctx.config)
        flow = LinkFlow(
            user_id=ctx.config.user_id,
            create_link_token_fn=plaid_client.create_link_token,
            exchange_public_token_fn=plaid_client.exchange_public_token,
        )
        console.print(f"Link token: [cyan]{flow.create_link_token()}[/cyan]")
        public_token = typer.prompt("Public token from Plaid Link")
        flow.exchange(public_token)

        tool = _sync_tool(ctx, plaid_client)

        async def _first_sync() -> SyncSummary | None:
            return await flow.fetch(
                lambda token: _run_sync(
                    tool,
                    token,
                    days_back=days_back,
                    max_transactions=max_transactions,
                )
            )

        asyncio.run(_first_sync())


@app.command("sync")
def sync(
    access_token: str | None = typer.Option(
        None, help="Plaid access token; defaults to the stored token"
    ),
    days_back: int = typer.Option(90, help="Days of history to fetch"),
    max_transactions: int = typer.Option(2000, help="Maximum transactions to fetch"),
) -> None:
    """Fetch accounts and transactions from Plaid, store and categorize them."""
    with _reported_errors():
        ctx = _context()
        tool = _sync_tool(ctx, _plaid_client(ctx.config))
        asyncio.run(
            _run_sync(
                tool,
                access_token,
                days_back=days_back,
                max_transactions=max_transactions,
            )
        )


@app.command("accounts")
def accounts() -> None:
    """List active accounts and the total balance."""
    with _reported_errors():
        ctx = _context()
        rows = ctx.db.list_accounts(ctx.config.user_id)
        total = ctx.db.total_balance(ctx.config.user_id)

    table = Table(title="Accounts")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Bank")
    table.add_column("Type")
    table.add_column("Number")
    table.add_column("Balance", justify="right")
    table.add_column("Last synced")
    for account in rows:
        table.add_row(
            str(account.id),
            account.bank_name,
            account.account_type,
            account.account_number,
            f"{account.balance:,.2f} {account.currency}",
            account.last_synced_at.strftime("%Y-%m-%d %H:%M")
            if account.last_synced_at
            else "-",
        )
    console.print(table)
    console.print(f"[bold]Total balance:[/bold] {total:,.2f}")


@app.command("transactions")
def transactions(
    account_id: int | None = typer.Option(None, help="Only this account"),
    limit: int = typer.Option(50, help="Maximum rows to show"),
) -> None:
    """List transactions on active accounts, newest first."""
    with _reported_errors():
        ctx = _context()
        rows = ctx.db.list_transactions(ctx.config.user_id, account_id=account_id)

    table = Table(title="Transactions")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Category")
    for txn in rows[:limit]:
        style = "green" if txn.amount > 0 else "white"
        category = txn.category_name or "-"
        if txn.is_manual_category:
            category += " *"
        table.add_row(
            str(txn.id),
            txn.date.isoformat(),
            txn.description,
            f"[{style}]{txn.amount:,.2f}[/{style}]",
            category,
        )
    console.print(table)
    if len(rows) > limit:
        console.print(f"{len(rows) - limit} more not shown")


@app.command("set-category")
def set_category(transaction_id: int, category: str) -> None:
    """Set a transaction's category. Automatic categorization never changes it."""
    with _reported_errors():
        ctx = _context()
        _check_category(ctx, category)
        ctx.db.set_category(ctx.config.user_id, transaction_id, category)
    console.print(f"Transaction {transaction_id} set to {category}")


@app.command("categories")
def categories() -> None:
    """List default and custom categories."""
    with _reported_errors():
        ctx = _context()
        rows = ctx.db.list_categories(ctx.config.user_id)

    table = Table(title="Categories")
    table.add_column("Name")
    table.add_column("Color")
    table.add_column("Default", justify="center")
    for category in rows:
        table.add_row(
            category.name, category.color or "-", "yes" if category.is_default else ""
        )
    console.print(table)


@app.command("add-category")
def add_category(
    name: str, color: str | None = typer.Option(None, help="Hex display color")
) -> None:
    """Create a custom category."""
    with _reported_errors():
        ctx = _context()
        ctx.db.save_category(ctx.config.user_id, name, color)
    console.print(f"Added category {name}")


@app.command("remove-account")
def remove_account_cmd(account_id: int) -> None:
    """Disconnect an account. Its transactions are hidden, not deleted."""
    with _reported_errors():
        ctx = _context()
        cleared = remove_account(
            ctx.db, ctx.token_store, ctx.config.user_id, account_id
        )
    console.print(f"Account {account_id} removed")
    if cleared:
        console.print("No accounts left; stored access token cleared.")


@app.command("spending")
def spending() -> None:
    """Show spending per category over active accounts."""
    with _reported_errors():
        ctx = _context()
        user_id = ctx.config.user_id
        ctx.db.seed_default_budgets(user_id, default_taxonomy().default_budgets())
        rows = ctx.db.spending_by_category(user_id)
        budgets = {
            b.category_name: b.budget_amount for b in ctx.db.list_budgets(user_id)
        }

    table = Table(title="Spending by category")
    table.add_column("Category")
    table.add_column("Spent", justify="right")
    table.add_column("Count", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Budget", justify="right")
    for row in rows:
        budget = budgets.get(row.category_name)
        over = budget is not None and row.total > budget
        spent_style = "red" if over else "white"
        table.add_row(
            row.category_name,
            f"[{spent_style}]{row.total:,.2f}[/{spent_style}]",
            str(row.count),
            f"{row.percentage:.1f}%",
            f"{budget:,.2f}" if budget is not None else "-",
        )
    console.print(table)


@app.command("budgets")
def budgets_cmd() -> None:
    """List monthly budgets, seeding the defaults the first time."""
    with _reported_errors():
        ctx = _context()
        user_id = ctx.config.user_id
        ctx.db.seed_default_budgets(user_id, default_taxonomy().default_budgets())
        rows = ctx.db.list_budgets(user_id)

    table = Table(title="Budgets")
    table.add_column("Category")
    table.add_column("Monthly budget", justify="right")
    for budget in rows:
        table.add_row(budget.category_name, f"{budget.budget_amount:,.2f}")
    console.print(table)


@app.command("set-budget")
def set_budget(category: str, amount: float) -> None:
    """Set the monthly budget for a category."""
    with _reported_errors():
        ctx = _context()
        _check_category(ctx, category)
        ctx.db.seed_default_budgets(
            ctx.config.user_id, default_taxonomy().default_budgets()
        )
        budget = ctx.db.set_budget(ctx.config.user_id, category, amount)
    console.print(f"Budget for {category} set to {budget.budget_amount:,.2f}")


@app.command("preferences")
def preferences(
    auto_categorize: bool | None = typer.Option(
        None, "--auto-categorize/--no-auto-categorize", help="Categorize after sync"
    ),
    currency: str | None = typer.Option(None, help="Default currency code"),
    notifications: bool | None = typer.Option(
        None, "--notifications/--no-notifications", help="Enable notifications"
    ),
) -> None:
    """Show or update user preferences."""
    updates: dict[str, object] = {}
    if auto_categorize is not None:
        updates["auto_categorize"] = auto_categorize
    if currency is not None:
        updates["default_currency"] = currency.upper()
    if notifications is not None:
        updates["notifications_enabled"] = notifications

    with _reported_errors():
        ctx = _context()
        if updates:
            prefs = ctx.db.save_user_preferences(ctx.config.user_id, **updates)
        else:
            prefs = ctx.db.get_user_preferences(ctx.config.user_id)

    if prefs is None:
        console.print("No preferences saved; defaults apply.")
        return
    console.print(f"auto_categorize: {prefs.auto_categorize}")
    console.print(f"default_currency: {prefs.default_currency}")
    console.print(f"notifications_enabled: {prefs.notifications_enabled}")


if __name__ == "__main__":
    app()
