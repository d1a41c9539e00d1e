"""Sync tools package."""

from moneyspread.tools.sync.sync_tool import (
    MappingError,
    SyncError,
    SyncSummary,
    SyncTool,
    SyncTransactionsTool,
)

__all__ = [
    "MappingError",
    "SyncError",
    "SyncSummary",
    "SyncTool",
    "SyncTransactionsTool",
]
