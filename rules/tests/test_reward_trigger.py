"""
Unit Tests for the Reward Trigger

Tests cover:
1. Condition and condition-group evaluation
2. Rule (de)serialization
3. Matching rules by trigger and priority
4. Point disbursement through the ledger, including rejections
"""

import pytest

from core.errors import InvalidInputError
from ledger.models import ActivityType
from rules.rule_engine import (
    Action,
    ActionType,
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    RewardTrigger,
    Rule,
    TriggerEvent,
    default_reward_rules,
)


def kept_well_context(owner_id: int, share_id: int, check_status: int = 1) -> dict:
    return {
        "beneficiary_id": owner_id,
        "activity_id": share_id,
        "share": {"id": share_id, "check_status": check_status, "score": 5},
        "evaluator": {"kind": "guest"},
    }


@pytest.fixture
def trigger(ledger, catalog) -> RewardTrigger:
    trigger = RewardTrigger(ledger, catalog)
    for rule in default_reward_rules():
        trigger.add_rule(rule)
    return trigger


class TestConditions:
    """Tests for condition evaluation against an event context."""

    def test_nested_field_lookup(self):
        condition = Condition(field="share.score", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=4)

        assert condition.evaluate({"share": {"score": 5}}) is True
        assert condition.evaluate({"share": {"score": 3}}) is False

    def test_missing_field_never_satisfies_ordering(self):
        condition = Condition(field="share.score", operator=ConditionOperator.LESS_THAN, value=3)

        assert condition.evaluate({}) is False
        assert condition.evaluate({"share": "not-a-dict"}) is False

    def test_membership_and_flags(self):
        context = {"evaluator": {"kind": "guest"}, "first_time": True}

        assert Condition("evaluator.kind", ConditionOperator.IN, ["guest", "registered"]).evaluate(context)
        assert not Condition("evaluator.kind", ConditionOperator.NOT_IN, ["guest"]).evaluate(context)
        assert Condition("first_time", ConditionOperator.IS_TRUE).evaluate(context)
        assert Condition("missing", ConditionOperator.IS_FALSE).evaluate(context)

    def test_groups_combine_conditions(self):
        kept_well = Condition("share.check_status", ConditionOperator.EQUALS, 1)
        high_score = Condition("share.score", ConditionOperator.GREATER_THAN, 4)
        context = {"share": {"check_status": 1, "score": 3}}

        assert ConditionGroup(LogicalOperator.AND, [kept_well, high_score]).evaluate(context) is False
        assert ConditionGroup(LogicalOperator.OR, [kept_well, high_score]).evaluate(context) is True

    def test_empty_group_always_matches(self):
        assert ConditionGroup(LogicalOperator.AND, []).evaluate({}) is True


class TestRuleSerialization:

    def test_round_trip_preserves_nested_groups(self):
        rule = Rule(
            id="rule-generous-guest",
            name="Generous guest bonus",
            trigger=TriggerEvent.SHARE_EVALUATED,
            conditions=ConditionGroup(LogicalOperator.AND, [
                Condition("share.check_status", ConditionOperator.EQUALS, 1),
                ConditionGroup(LogicalOperator.OR, [
                    Condition("share.score", ConditionOperator.EQUALS, 5),
                    Condition("evaluator.kind", ConditionOperator.EQUALS, "registered"),
                ]),
            ]),
            actions=[Action(ActionType.DISBURSE_POINTS, {"policy": "bonus", "reason": "Five stars"})],
            priority=3,
        )

        restored = Rule.from_dict(rule.to_dict())

        assert restored == rule

    def test_from_dict_defaults(self):
        rule = Rule.from_dict({
            "id": "r1",
            "name": "Attendance",
            "trigger": "attendance_checked_in",
            "conditions": {"operator": "AND", "conditions": []},
            "actions": [{"type": "disburse_points", "params": {"policy": "attendance"}}],
        })

        assert rule.is_active is True
        assert rule.priority == 0
        assert rule.trigger == TriggerEvent.ATTENDANCE_CHECKED_IN

    def test_unknown_operator_is_rejected(self):
        with pytest.raises(ValueError):
            Condition.from_dict({"field": "x", "operator": "contains", "value": "y"})

    def test_disburse_action_without_policy_is_rejected(self):
        with pytest.raises(InvalidInputError):
            Action.from_dict({"type": "disburse_points", "params": {}})
        with pytest.raises(InvalidInputError):
            Action(ActionType.DISBURSE_POINTS, {"reason": "no policy named"})


class TestRuleMatching:

    def test_rules_filtered_by_trigger_and_sorted_by_priority(self, trigger):
        low = Rule(
            id="rule-low", name="Low", trigger=TriggerEvent.SHARE_EVALUATED,
            conditions=ConditionGroup(LogicalOperator.AND, []), actions=[], priority=1,
        )
        trigger.add_rule(low)

        rules = trigger.list_rules(TriggerEvent.SHARE_EVALUATED)

        assert [r.id for r in rules] == ["rule-promise-kept-well", "rule-low"]

    def test_inactive_rule_does_not_match(self, trigger):
        trigger.rules["rule-promise-kept-well"].is_active = False

        assert trigger.matching_rules(TriggerEvent.SHARE_EVALUATED, kept_well_context(1, 1)) == []

    def test_remove_rule(self, trigger):
        trigger.remove_rule("rule-attendance")
        trigger.remove_rule("never-added")

        assert trigger.list_rules(TriggerEvent.ATTENDANCE_CHECKED_IN) == []


class TestRewardFiring:
    """Tests for disbursing points when rules match."""

    def test_kept_well_pays_owner_once(self, trigger, catalog, ledger, make_user):
        owner = make_user("owner")
        catalog.create("promise_kept_well", 20)

        first = trigger.fire(TriggerEvent.SHARE_EVALUATED, kept_well_context(owner, 7))
        second = trigger.fire(TriggerEvent.SHARE_EVALUATED, kept_well_context(owner, 7))

        assert first[0].success is True
        assert first[0].ledger_entry.activity_type == ActivityType.SHARE
        assert first[0].ledger_entry.reason == "Promise kept well"
        assert second[0].success is False
        assert second[0].error_code == "ALREADY_PAID"
        assert ledger.get_balance(owner).current_balance == 20

    def test_other_verdicts_pay_nothing(self, trigger, catalog, ledger, make_user):
        owner = make_user()
        catalog.create("promise_kept_well", 20)

        for check_status in (0, -1):
            assert trigger.fire(TriggerEvent.SHARE_EVALUATED, kept_well_context(owner, 7, check_status)) == []

        assert ledger.get_balance(owner).total_entries == 0

    def test_missing_policy_is_reported(self, trigger, make_user):
        owner = make_user()

        results = trigger.fire(TriggerEvent.SHARE_EVALUATED, kept_well_context(owner, 7))

        assert results[0].success is False
        assert results[0].error_code == "NOT_FOUND"

    def test_insufficient_funds_is_reported(self, trigger, catalog, make_user):
        owner = make_user(point=5)
        catalog.create("work_complete", -10)

        results = trigger.fire(TriggerEvent.WORK_COMPLETED, {"beneficiary_id": owner, "activity_id": 3})

        assert results[0].error_code == "INSUFFICIENT_FUNDS"

    def test_attendance_uses_attendance_activity(self, trigger, catalog, make_user):
        user_id = make_user()
        catalog.create("attendance", 10)

        results = trigger.fire(TriggerEvent.ATTENDANCE_CHECKED_IN, {"beneficiary_id": user_id, "activity_id": 5})

        assert results[0].ledger_entry.activity_type == ActivityType.ATTENDANCE
        assert results[0].ledger_entry.activity_id == 5

    def test_context_without_beneficiary_is_invalid(self, trigger):
        with pytest.raises(InvalidInputError):
            trigger.fire(TriggerEvent.SHARE_EVALUATED, {"activity_id": 7})

    def test_action_losing_its_policy_is_reported(self, trigger, make_user):
        owner = make_user()
        trigger.rules["rule-promise-kept-well"].actions[0].params.clear()

        results = trigger.fire(TriggerEvent.SHARE_EVALUATED, kept_well_context(owner, 7))

        assert results[0].success is False
        assert results[0].error_code == "INVALID_INPUT"
