"""Shared test fixtures."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest

from moneyspread.adapters.db.facade import DB

# Plaid sandbox data: a checking and a credit card account with eight
# transactions between them. Amounts follow Plaid's debit-positive convention.
_SANDBOX_ACCOUNTS: list[dict[str, Any]] = [
    {
        "account_id": "plaid_checking_001",
        "balances": {
            "available": 2843.67,
            "current": 2843.67,
            "iso_currency_code": "CAD",
        },
        "name": "Plaid Checking",
        "official_name": "Plaid Gold Standard 0% Interest Checking",
        "type": "depository",
        "subtype": "checking",
        "mask": "0000",
    },
    {
        "account_id": "plaid_credit_001",
        "balances": {
            "available": None,
            "current": -356.50,
            "iso_currency_code": "CAD",
        },
        "name": "Plaid Credit Card",
        "official_name": "Plaid Diamond 12.5% APR Interest Credit Card",
        "type": "credit",
        "subtype": "credit card",
        "mask": "3333",
    },
]

_SANDBOX_TRANSACTIONS: list[dict[str, Any]] = [
    {
        "transaction_id": "plaid_trans_001",
        "account_id": "plaid_checking_001",
        "amount": 67.43,
        "date": "2024-01-23",
        "name": "Loblaws",
        "merchant_name": "Loblaws",
        "category": ["Shops", "Food and Beverage Store", "Supermarkets and Groceries"],
    },
    {
        "transaction_id": "plaid_trans_002",
        "account_id": "plaid_checking_001",
        "amount": 12.50,
        "date": "2024-01-22",
        "name": "Tim Hortons",
        "merchant_name": "Tim Hortons",
        "category": ["Food and Drink", "Restaurants", "Coffee Shop"],
    },
    {
        "transaction_id": "plaid_trans_003",
        "account_id": "plaid_checking_001",
        "amount": 34.99,
        "date": "2024-01-22",
        "name": "Shoppers Drug Mart",
        "merchant_name": "Shoppers Drug Mart",
        "category": ["Shops", "Pharmacies"],
    },
    {
        "transaction_id": "plaid_trans_004",
        "account_id": "plaid_checking_001",
        "amount": 3.35,
        "date": "2024-01-21",
        "name": "TTC Subway",
        "merchant_name": "TTC",
        "category": ["Transportation", "Public Transportation"],
    },
    {
        "transaction_id": "plaid_trans_005",
        "account_id": "plaid_checking_001",
        "amount": -2800.00,
        "date": "2024-01-20",
        "name": "Direct Deposit - Salary",
        "merchant_name": "Employer",
        "category": ["Deposit", "Payroll"],
    },
    {
        "transaction_id": "plaid_trans_006",
        "account_id": "plaid_credit_001",
        "amount": 16.99,
        "date": "2024-01-19",
        "name": "Netflix",
        "merchant_name": "Netflix",
        "category": ["Service", "Entertainment", "TV and Movies"],
    },
    {
        "transaction_id": "plaid_trans_007",
        "account_id": "plaid_credit_001",
        "amount": 89.24,
        "date": "2024-01-18",
        "name": "Canadian Tire",
        "merchant_name": "Canadian Tire",
        "category": ["Shops", "General Merchandise", "Department Stores"],
    },
    {
        "transaction_id": "plaid_trans_008",
        "account_id": "plaid_checking_001",
        "amount": 75.00,
        "date": "2024-01-17",
        "name": "Bell Canada",
        "merchant_name": "Bell Canada",
        "category": ["Service", "Telecommunication Services"],
    },
]


@pytest.fixture
def db(tmp_path: Path) -> DB:
    """File-backed SQLite database with the schema created.

    A file is used rather than :memory: because syncs touch the database
    from worker threads.
    """
    database = DB(f"sqlite:///{tmp_path / 'moneyspread.db'}")
    database.create_schema()
    return database


@pytest.fixture
def sandbox_accounts() -> list[dict[str, Any]]:
    return copy.deepcopy(_SANDBOX_ACCOUNTS)


@pytest.fixture
def sandbox_transactions() -> list[dict[str, Any]]:
    return copy.deepcopy(_SANDBOX_TRANSACTIONS)
