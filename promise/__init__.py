"""
Promise sharing and evaluation.

This module provides:
- Owner-only promise management (deleting a promise removes its shares and repeats)
- Listing an owner's promises by scheduled time, and recurring schedules
- Share links backed by unique, URL-safe tokens
- A single, time-boxed evaluation per share by a registered user or a guest
"""

from .models import (
    CheckStatus,
    CycleType,
    RegisteredEvaluator,
    GuestEvaluator,
    EvaluationOutcome,
    Promise,
    PromiseCycle,
    Share,
    Evaluation,
)
from .service import PromiseBook, ShareTokenIssuer, EvaluationWorkflow

__all__ = [
    "CheckStatus",
    "CycleType",
    "RegisteredEvaluator",
    "GuestEvaluator",
    "EvaluationOutcome",
    "Promise",
    "PromiseCycle",
    "Share",
    "Evaluation",
    "PromiseBook",
    "ShareTokenIssuer",
    "EvaluationWorkflow",
]
