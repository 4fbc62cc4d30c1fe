"""
Point Ledger for the promise economy

This module provides:
- Named, signed point policies (create, update, delete while unreferenced)
- Immutable ledger entries, at most one per triggering activity
- Balance updates committed atomically with their ledger entry
- Non-negative balances for deducting policies
"""

from .models import (
    ActivityType,
    ActivityRef,
    PointPolicy,
    LedgerEntry,
    UserBalance,
)
from .service import LedgerService, PointPolicyCatalog

__all__ = [
    "ActivityType",
    "ActivityRef",
    "PointPolicy",
    "LedgerEntry",
    "UserBalance",
    "LedgerService",
    "PointPolicyCatalog",
]
