"""
Reward Rules Package

Provides rule representation and evaluation for turning workflow events
(share evaluations, attendance check-ins, completed work) into point
disbursements through the ledger.
"""

from .rule_engine import (
    RewardTrigger,
    RewardResult,
    Rule,
    Condition,
    ConditionGroup,
    Action,
    ConditionOperator,
    ActionType,
    TriggerEvent,
    default_reward_rules,
)

__all__ = [
    "RewardTrigger",
    "RewardResult",
    "Rule",
    "Condition",
    "ConditionGroup",
    "Action",
    "ConditionOperator",
    "ActionType",
    "TriggerEvent",
    "default_reward_rules",
]
