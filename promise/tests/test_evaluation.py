"""
Unit Tests for the Evaluation Workflow

Tests cover:
1. Evaluation window around the scheduled time
2. One evaluation per share, regardless of evaluator
3. Registered and guest evaluator resolution
4. Score/feedback defaults
5. Reward trigger on a kept-well verdict
"""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from core.errors import AlreadyEvaluatedError, InternalError, NotFoundError, WindowExpiredError
from core.tables import DEFAULT_FEEDBACK, DEFAULT_GUEST_NAME, EvaluationRow
from promise.models import (
    CheckStatus,
    EvaluationOutcome,
    GuestEvaluator,
    RegisteredEvaluator,
)
from promise.service import EvaluationWorkflow
from rules.rule_engine import RewardTrigger, default_reward_rules

PROMISE_AT = datetime(2024, 12, 25, 14, 0)


def workflow_at(database, settings, now, reward_trigger=None) -> EvaluationWorkflow:
    return EvaluationWorkflow(database, settings, reward_trigger=reward_trigger, clock=lambda: now)


@pytest.fixture
def shared(issuer, make_user, make_promise):
    owner = make_user("owner")
    promise = make_promise(owner, scheduled_at=PROMISE_AT)
    response = issuer.issue(promise.id, owner)
    return owner, response.share


class TestEvaluationWindow:
    """Tests for the time box around the promise."""

    def test_accepted_23_hours_after(self, database, settings, shared):
        _, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT + timedelta(hours=23))

        response = workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT))

        assert response.share.id == share.id

    def test_rejected_25_hours_after(self, database, settings, shared):
        _, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT + timedelta(hours=25))

        with pytest.raises(WindowExpiredError):
            workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT))

        # A rejected evaluation leaves no trace
        with database.transaction() as session:
            assert session.query(EvaluationRow).count() == 0

    def test_accepted_exactly_at_deadline(self, database, settings, shared):
        _, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT + timedelta(hours=24))

        workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT))

    def test_unscheduled_promise_has_no_deadline(self, database, settings, issuer, make_user, make_promise):
        owner = make_user()
        promise = make_promise(owner, scheduled_at=None)
        share = issuer.issue(promise.id, owner).share
        workflow = workflow_at(database, settings, datetime(2099, 1, 1))

        response = workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.BROKEN))

        assert response.share.check_status == CheckStatus.BROKEN


class TestSingleEvaluation:
    """Tests for one evaluation per share."""

    def test_guest_scenario(self, database, settings, shared):
        """Test a guest verdict followed by a second guest's attempt."""
        _, share = shared
        workflow = workflow_at(database, settings, datetime(2024, 12, 26, 10, 0))

        response = workflow.submit(
            share.id,
            GuestEvaluator(display_name="Old friend"),
            EvaluationOutcome(check_status=CheckStatus.KEPT_WELL, score=5, feedback="great"),
        )

        assert response.share.score == 5
        assert response.share.check_status == CheckStatus.KEPT_WELL
        assert response.share.feedback == "great"

        with pytest.raises(AlreadyEvaluatedError):
            workflow.submit(
                share.id,
                GuestEvaluator(display_name="Someone else"),
                EvaluationOutcome(check_status=CheckStatus.BROKEN, score=1),
            )

        # The first verdict stands
        again = workflow_at(database, settings, datetime(2024, 12, 26, 10, 0))
        with pytest.raises(AlreadyEvaluatedError):
            again.submit(share.token, RegisteredEvaluator(user_id=shared[0]), EvaluationOutcome(check_status=0))

    def test_registered_then_guest_conflicts(self, database, settings, shared, make_user):
        _, share = shared
        friend = make_user("friend")
        workflow = workflow_at(database, settings, PROMISE_AT)

        workflow.submit(share.id, RegisteredEvaluator(user_id=friend), EvaluationOutcome(check_status=CheckStatus.KEPT))

        with pytest.raises(AlreadyEvaluatedError):
            workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT))

    def test_unique_index_rejects_racing_evaluation(self, database, settings, shared, monkeypatch):
        """Test that the storage constraint alone stops a second evaluation."""
        _, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT)
        workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT_WELL, score=4))

        # Simulate a concurrent request that passed the existence check
        monkeypatch.setattr(EvaluationWorkflow, "_is_evaluated", lambda self, session, share_id: False)

        with pytest.raises(AlreadyEvaluatedError):
            workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.BROKEN, score=1))

        with database.transaction() as session:
            assert session.query(EvaluationRow).count() == 1

    def test_storage_rejects_evaluation_without_evaluator(self, database, shared):
        _, share = shared

        with pytest.raises(InternalError):
            with database.transaction() as session:
                session.add(EvaluationRow(share_id=share.id))


class TestEvaluatorResolution:
    """Tests for registered and guest evaluators."""

    def test_registered_evaluator(self, database, settings, shared, make_user):
        _, share = shared
        friend = make_user("friend")

        response = workflow_at(database, settings, PROMISE_AT).submit(
            share.id, RegisteredEvaluator(user_id=friend), EvaluationOutcome(check_status=CheckStatus.KEPT)
        )

        assert response.evaluation.evaluator == RegisteredEvaluator(user_id=friend)
        assert response.is_guest is False
        assert response.signup_suggestion is None

    def test_unknown_registered_evaluator(self, database, settings, shared):
        _, share = shared

        with pytest.raises(NotFoundError):
            workflow_at(database, settings, PROMISE_AT).submit(
                share.id, RegisteredEvaluator(user_id=999), EvaluationOutcome(check_status=CheckStatus.KEPT)
            )

    def test_new_guest_gets_default_name_and_signup_hint(self, database, settings, shared):
        _, share = shared

        response = workflow_at(database, settings, PROMISE_AT).submit(
            share.id, GuestEvaluator(display_name="   "), EvaluationOutcome(check_status=CheckStatus.KEPT)
        )

        evaluator = response.evaluation.evaluator
        assert isinstance(evaluator, GuestEvaluator)
        assert evaluator.guest_id is not None
        assert evaluator.display_name == DEFAULT_GUEST_NAME
        assert response.is_guest is True
        assert response.signup_url == settings.signup_url

    def test_existing_guest_is_reused(self, database, settings, issuer, make_user, make_promise):
        owner = make_user()
        promise = make_promise(owner, scheduled_at=None)
        first = issuer.issue(promise.id, owner).share
        second = issuer.issue(promise.id, owner).share
        workflow = workflow_at(database, settings, PROMISE_AT)

        guest = workflow.submit(
            first.id, GuestEvaluator(display_name="Neighbour"), EvaluationOutcome(check_status=CheckStatus.KEPT)
        ).evaluation.evaluator
        reused = workflow.submit(
            second.id, GuestEvaluator(guest_id=guest.guest_id), EvaluationOutcome(check_status=CheckStatus.KEPT)
        ).evaluation.evaluator

        assert reused.guest_id == guest.guest_id
        assert reused.display_name == "Neighbour"

    def test_unknown_guest(self, database, settings, shared):
        _, share = shared

        with pytest.raises(NotFoundError):
            workflow_at(database, settings, PROMISE_AT).submit(
                share.id, GuestEvaluator(guest_id=404), EvaluationOutcome(check_status=CheckStatus.KEPT)
            )

    def test_unknown_share(self, database, settings):
        with pytest.raises(NotFoundError):
            workflow_at(database, settings, PROMISE_AT).submit(
                404, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT)
            )

    def test_share_resolved_by_token(self, database, settings, shared):
        _, share = shared

        response = workflow_at(database, settings, PROMISE_AT).submit(
            share.token, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT_WELL)
        )

        assert response.share.id == share.id


class TestOutcomeDefaults:
    """Tests for score and feedback handling."""

    @pytest.mark.parametrize("score, stored", [(None, 3), (0, 3), (9, 3), (-2, 3), (1, 1), (5, 5)])
    def test_score_outside_range_keeps_default(self, database, settings, shared, score, stored):
        _, share = shared

        response = workflow_at(database, settings, PROMISE_AT).submit(
            share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT, score=score)
        )

        assert response.share.score == stored

    def test_blank_feedback_keeps_default(self, database, settings, shared):
        _, share = shared

        response = workflow_at(database, settings, PROMISE_AT).submit(
            share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT, feedback="  ")
        )

        assert response.share.feedback == DEFAULT_FEEDBACK

    def test_check_status_is_a_closed_set(self):
        with pytest.raises(ValidationError):
            EvaluationOutcome(check_status=2)


class TestRewardOnEvaluation:
    """Tests for points paid when a promise is kept well."""

    @pytest.fixture
    def trigger(self, ledger, catalog):
        catalog.create("promise_kept_well", 20)
        trigger = RewardTrigger(ledger, catalog)
        for rule in default_reward_rules():
            trigger.add_rule(rule)
        return trigger

    def test_kept_well_pays_the_owner(self, database, settings, shared, ledger, trigger):
        owner, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT, reward_trigger=trigger)

        response = workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT_WELL))

        assert [r.success for r in response.rewards] == [True]
        assert response.rewards[0].ledger_entry.activity_id == share.id
        assert ledger.get_balance(owner).current_balance == 20

    def test_plain_kept_pays_nothing(self, database, settings, shared, ledger, trigger):
        owner, share = shared
        workflow = workflow_at(database, settings, PROMISE_AT, reward_trigger=trigger)

        response = workflow.submit(share.id, GuestEvaluator(), EvaluationOutcome(check_status=CheckStatus.KEPT))

        assert response.rewards == []
        assert ledger.get_balance(owner).current_balance == 0
