"""
Shared infrastructure for the promise ledger.

This package provides:
- Environment-driven settings
- The service error taxonomy
- SQLAlchemy engine/session handling with per-request transactions
- ORM tables for users, promises, shares, evaluations, policies and ledger entries
"""

from .config import Settings, get_settings
from .db import Database
from .errors import (
    ServiceError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    AlreadyPaidError,
    AlreadyEvaluatedError,
    InvalidInputError,
    InsufficientFundsError,
    WindowExpiredError,
    InternalError,
)

__all__ = [
    "Settings",
    "get_settings",
    "Database",
    "ServiceError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "AlreadyPaidError",
    "AlreadyEvaluatedError",
    "InvalidInputError",
    "InsufficientFundsError",
    "WindowExpiredError",
    "InternalError",
]
