import logging
import operator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from pydantic import BaseModel

from core.errors import InvalidInputError, ServiceError
from ledger.models import ActivityRef, ActivityType, LedgerEntry

if TYPE_CHECKING:
    from ledger.service import LedgerService, PointPolicyCatalog

log = logging.getLogger("promise_ledger.rules")


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    DISBURSE_POINTS = "disburse_points"


class TriggerEvent(str, Enum):
    SHARE_EVALUATED = "share_evaluated"
    ATTENDANCE_CHECKED_IN = "attendance_checked_in"
    WORK_COMPLETED = "work_completed"


TRIGGER_ACTIVITY = {
    TriggerEvent.SHARE_EVALUATED: ActivityType.SHARE,
    TriggerEvent.ATTENDANCE_CHECKED_IN: ActivityType.ATTENDANCE,
    TriggerEvent.WORK_COMPLETED: ActivityType.WORK,
}

_COMPARATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.GREATER_THAN: operator.gt,
    ConditionOperator.LESS_THAN: operator.lt,
    ConditionOperator.GREATER_THAN_OR_EQUAL: operator.ge,
    ConditionOperator.LESS_THAN_OR_EQUAL: operator.le,
    ConditionOperator.IN: lambda value, options: value in (options or ()),
    ConditionOperator.NOT_IN: lambda value, options: value not in (options or ()),
    ConditionOperator.IS_TRUE: lambda value, _: bool(value),
    ConditionOperator.IS_FALSE: lambda value, _: not value,
}

_ORDERING = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.LESS_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUAL,
    ConditionOperator.LESS_THAN_OR_EQUAL,
}


def lookup(context: dict, path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        actual = lookup(context, self.field)
        if actual is None and self.operator in _ORDERING:
            return False
        return _COMPARATORS[self.operator](actual, self.value)

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        combine = all if self.operator == LogicalOperator.AND else any
        return combine(c.evaluate(context) for c in self.conditions) if self.conditions else True

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        return cls(
            operator=LogicalOperator(data["operator"]),
            conditions=[_conditions_from_dict(c) for c in data["conditions"]],
        )


def _conditions_from_dict(data: dict) -> Union[Condition, ConditionGroup]:
    if "conditions" in data:
        return ConditionGroup.from_dict(data)
    return Condition.from_dict(data)


_REQUIRED_PARAMS = {
    ActionType.DISBURSE_POINTS: ("policy",),
}


@dataclass
class Action:
    type: ActionType
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        missing = self.missing_params()
        if missing:
            raise InvalidInputError(f"{self.type.value} action needs {', '.join(missing)}")

    def missing_params(self) -> list[str]:
        return [name for name in _REQUIRED_PARAMS.get(self.type, ()) if not self.params.get(name)]

    def to_dict(self) -> dict:
        return {"type": self.type.value, "params": self.params}

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        return cls(type=ActionType(data["type"]), params=data.get("params", {}))


@dataclass
class Rule:
    id: str
    name: str
    trigger: TriggerEvent
    conditions: Union[Condition, ConditionGroup]
    actions: list[Action]
    description: str = ""
    is_active: bool = True
    priority: int = 0

    def matches(self, context: dict) -> bool:
        return self.is_active and self.conditions.evaluate(context)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "is_active": self.is_active, "priority": self.priority,
            "trigger": self.trigger.value, "conditions": self.conditions.to_dict(),
            "actions": [a.to_dict() for a in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            is_active=data.get("is_active", True), priority=data.get("priority", 0),
            trigger=TriggerEvent(data["trigger"]),
            conditions=_conditions_from_dict(data["conditions"]),
            actions=[Action.from_dict(a) for a in data["actions"]],
        )


class RewardResult(BaseModel):
    rule_id: str
    action: ActionType
    success: bool
    ledger_entry: Optional[LedgerEntry] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class RewardTrigger:
    """Turns workflow events into point disbursements.

    Rules are matched against an event context holding at least
    ``beneficiary_id`` and ``activity_id``; each matched ``disburse_points``
    action pays the named policy through the ledger, which owns all balance
    and duplicate-payment checks. Ledger rejections are reported per action
    and never raised, so the event that fired the trigger stays committed.
    """

    def __init__(self, ledger: "LedgerService", catalog: "PointPolicyCatalog"):
        self.ledger = ledger
        self.catalog = catalog
        self.rules: dict[str, Rule] = {}
        self.action_handlers: dict[ActionType, Callable[[Rule, Action, TriggerEvent, dict], LedgerEntry]] = {
            ActionType.DISBURSE_POINTS: self._disburse_points,
        }

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def list_rules(self, trigger: Optional[TriggerEvent] = None) -> list[Rule]:
        rules = [r for r in self.rules.values() if trigger is None or r.trigger == trigger]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def matching_rules(self, trigger: TriggerEvent, context: dict) -> list[Rule]:
        return [rule for rule in self.list_rules(trigger) if rule.matches(context)]

    def fire(self, trigger: TriggerEvent, context: dict) -> list[RewardResult]:
        if context.get("beneficiary_id") is None or context.get("activity_id") is None:
            raise InvalidInputError("Reward context needs beneficiary_id and activity_id")

        results = []
        for rule in self.matching_rules(trigger, context):
            for action in rule.actions:
                handler = self.action_handlers[action.type]
                try:
                    entry = handler(rule, action, trigger, context)
                except ServiceError as e:
                    log.info("Reward rule %s skipped for %s: %s", rule.id, trigger.value, e.message)
                    results.append(RewardResult(
                        rule_id=rule.id, action=action.type, success=False,
                        error_code=e.code, error=e.message,
                    ))
                    continue
                results.append(RewardResult(rule_id=rule.id, action=action.type, success=True, ledger_entry=entry))
        return results

    def _disburse_points(self, rule: Rule, action: Action, trigger: TriggerEvent, context: dict) -> LedgerEntry:
        missing = action.missing_params()
        if missing:
            raise InvalidInputError(f"Rule {rule.id} action needs {', '.join(missing)}")
        policy = self.catalog.get_by_name(action.params["policy"])
        activity = ActivityRef(type=TRIGGER_ACTIVITY[trigger], id=context["activity_id"])
        return self.ledger.disburse(
            context["beneficiary_id"],
            policy.id,
            activity=activity,
            reason=action.params.get("reason", rule.name),
        )


def default_reward_rules() -> list[Rule]:
    return [
        Rule(
            id="rule-promise-kept-well", name="Promise kept well",
            trigger=TriggerEvent.SHARE_EVALUATED,
            conditions=Condition(field="share.check_status", operator=ConditionOperator.EQUALS, value=1),
            actions=[Action(type=ActionType.DISBURSE_POINTS, params={"policy": "promise_kept_well"})],
            priority=10,
        ),
        Rule(
            id="rule-attendance", name="Daily attendance",
            trigger=TriggerEvent.ATTENDANCE_CHECKED_IN,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[]),
            actions=[Action(type=ActionType.DISBURSE_POINTS, params={"policy": "attendance"})],
        ),
        Rule(
            id="rule-work-complete", name="Farm work completed",
            trigger=TriggerEvent.WORK_COMPLETED,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[]),
            actions=[Action(type=ActionType.DISBURSE_POINTS, params={"policy": "work_complete"})],
        ),
    ]
