import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import Settings
from core.db import Database
from core.errors import (
    AlreadyEvaluatedError,
    ForbiddenError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    WindowExpiredError,
)
from core.tables import (
    DEFAULT_GUEST_NAME,
    DEFAULT_SCORE,
    EvaluationRow,
    GuestRow,
    PromiseCycleRow,
    PromiseRow,
    ShareRow,
    UserRow,
    utcnow,
)
from rules.rule_engine import RewardTrigger, TriggerEvent

from .models import (
    Evaluation,
    EvaluationOutcome,
    EvaluationResponse,
    EvaluatorIdentity,
    GuestEvaluator,
    Promise,
    PromiseCreateRequest,
    PromiseCycle,
    PromiseCycleRequest,
    PromiseCycleUpdateRequest,
    PromiseDetail,
    PromiseList,
    PromiseSummary,
    PromiseUpdateRequest,
    RegisteredEvaluator,
    Share,
    SharePreview,
    ShareResponse,
)

log = logging.getLogger("promise_ledger.promise")

SIGNUP_SUGGESTION = "Sign up to keep your own promises and earn points!"

_REQUIRED_PROMISE_FIELDS = ("title", "body", "alert_minutes")


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _check_cycle_range(starts_at: datetime, ends_at: datetime) -> None:
    if ends_at < starts_at:
        raise InvalidInputError("A repeat cannot end before it starts")


def _owned_promise(session: Session, promise_id: int, requester_id: int, action: str) -> PromiseRow:
    promise = session.get(PromiseRow, promise_id)
    if promise is None:
        log.warning("Promise %s rejected: promise %s not found", action, promise_id)
        raise NotFoundError(f"Promise {promise_id} not found")
    if promise.owner_id != requester_id:
        log.warning("Promise %s rejected: user %s does not own promise %s", action, requester_id, promise_id)
        raise ForbiddenError(f"Only the owner may {action} this promise")
    return promise


class PromiseBook:
    def __init__(self, db: Database):
        self.db = db

    def create(self, owner_id: int, request: PromiseCreateRequest) -> Promise:
        with self.db.transaction() as session:
            if session.get(UserRow, owner_id) is None:
                raise NotFoundError(f"User {owner_id} not found")
            data = request.model_dump()
            data["scheduled_at"] = _to_naive_utc(request.scheduled_at)
            promise = PromiseRow(owner_id=owner_id, **data)
            session.add(promise)
            session.flush()
            log.info("Promise created: id=%s owner=%s", promise.id, owner_id)
            return Promise.model_validate(promise)

    def list_promises(
        self, owner_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> PromiseList:
        """List an owner's promises by scheduled time.

        ``start`` and ``end`` bound ``scheduled_at`` inclusively; either may be
        omitted. Without bounds, unscheduled promises are listed last.
        """
        start, end = _to_naive_utc(start), _to_naive_utc(end)
        if start is not None and end is not None and start > end:
            raise InvalidInputError("start must not be after end")

        with self.db.transaction(write=False) as session:
            if session.get(UserRow, owner_id) is None:
                raise NotFoundError(f"User {owner_id} not found")
            query = select(PromiseRow).where(PromiseRow.owner_id == owner_id)
            if start is not None:
                query = query.where(PromiseRow.scheduled_at >= start)
            if end is not None:
                query = query.where(PromiseRow.scheduled_at <= end)
            query = query.order_by(PromiseRow.scheduled_at.is_(None), PromiseRow.scheduled_at, PromiseRow.id)
            items = [Promise.model_validate(p) for p in session.scalars(query)]
            return PromiseList(items=items, total_count=len(items))

    def get_detail(self, promise_id: int, requester_id: int) -> PromiseDetail:
        with self.db.transaction(write=False) as session:
            promise = _owned_promise(session, promise_id, requester_id, "view")
            shares = [Share.model_validate(s) for s in promise.shares]
            return PromiseDetail(
                promise=Promise.model_validate(promise),
                shares=shares,
                share_count=len(shares),
                cycles=[PromiseCycle.model_validate(c) for c in promise.cycles],
            )

    def update(self, promise_id: int, requester_id: int, request: PromiseUpdateRequest) -> Promise:
        # Only fields present in the request change; an explicit null clears.
        changes = request.model_dump(exclude_unset=True)
        cleared = sorted(name for name in _REQUIRED_PROMISE_FIELDS if name in changes and changes[name] is None)
        if cleared:
            raise InvalidInputError(f"{', '.join(cleared)} cannot be cleared")
        if "scheduled_at" in changes:
            changes["scheduled_at"] = _to_naive_utc(changes["scheduled_at"])

        with self.db.transaction() as session:
            promise = _owned_promise(session, promise_id, requester_id, "update")
            for name, value in changes.items():
                setattr(promise, name, value)
            log.info("Promise updated: id=%s fields=%s", promise_id, sorted(changes))
            return Promise.model_validate(promise)

    def append_memo(self, promise_id: int, requester_id: int, memo: str) -> Promise:
        with self.db.transaction() as session:
            promise = _owned_promise(session, promise_id, requester_id, "annotate")
            promise.memo = f"{promise.memo}\n{memo}" if promise.memo else memo
            return Promise.model_validate(promise)

    def delete(self, promise_id: int, requester_id: int) -> None:
        with self.db.transaction() as session:
            promise = _owned_promise(session, promise_id, requester_id, "delete")
            share_count = len(promise.shares)
            session.delete(promise)
            log.info("Promise deleted: id=%s shares_removed=%s", promise_id, share_count)

    def add_cycle(self, promise_id: int, requester_id: int, request: PromiseCycleRequest) -> PromiseCycle:
        starts_at, ends_at = _to_naive_utc(request.starts_at), _to_naive_utc(request.ends_at)
        _check_cycle_range(starts_at, ends_at)
        with self.db.transaction() as session:
            promise = _owned_promise(session, promise_id, requester_id, "repeat")
            cycle = PromiseCycleRow(
                promise_id=promise.id, cycle=request.cycle.value, starts_at=starts_at, ends_at=ends_at
            )
            session.add(cycle)
            session.flush()
            log.info("Promise %s repeats %s: cycle=%s", promise_id, cycle.cycle, cycle.id)
            return PromiseCycle.model_validate(cycle)

    def list_cycles(self, promise_id: int, requester_id: int) -> list[PromiseCycle]:
        with self.db.transaction(write=False) as session:
            promise = _owned_promise(session, promise_id, requester_id, "view")
            return [PromiseCycle.model_validate(c) for c in promise.cycles]

    def get_cycle(self, cycle_id: int, requester_id: int) -> PromiseCycle:
        with self.db.transaction(write=False) as session:
            return PromiseCycle.model_validate(self._owned_cycle(session, cycle_id, requester_id, "view"))

    def update_cycle(self, cycle_id: int, requester_id: int, request: PromiseCycleUpdateRequest) -> PromiseCycle:
        if not request.has_update_data():
            raise InvalidInputError("Provide cycle, starts_at or ends_at")

        with self.db.transaction() as session:
            cycle = self._owned_cycle(session, cycle_id, requester_id, "update")
            if request.cycle is not None:
                cycle.cycle = request.cycle.value
            if request.starts_at is not None:
                cycle.starts_at = _to_naive_utc(request.starts_at)
            if request.ends_at is not None:
                cycle.ends_at = _to_naive_utc(request.ends_at)
            _check_cycle_range(cycle.starts_at, cycle.ends_at)
            log.info("Promise cycle updated: id=%s", cycle_id)
            return PromiseCycle.model_validate(cycle)

    def delete_cycle(self, cycle_id: int, requester_id: int) -> None:
        with self.db.transaction() as session:
            cycle = self._owned_cycle(session, cycle_id, requester_id, "delete")
            session.delete(cycle)
            log.info("Promise cycle deleted: id=%s", cycle_id)

    def _owned_cycle(self, session: Session, cycle_id: int, requester_id: int, action: str) -> PromiseCycleRow:
        cycle = session.get(PromiseCycleRow, cycle_id)
        if cycle is None:
            raise NotFoundError(f"Promise cycle {cycle_id} not found")
        _owned_promise(session, cycle.promise_id, requester_id, action)
        return cycle


class ShareTokenIssuer:
    MAX_TOKEN_ATTEMPTS = 5

    def __init__(self, db: Database, settings: Settings, token_factory: Optional[Callable[[], str]] = None):
        self.db = db
        self.settings = settings
        self.token_factory = token_factory or self._new_token

    def _new_token(self) -> str:
        # token_urlsafe yields ~1.3 chars per byte, so slicing keeps a fixed length
        return secrets.token_urlsafe(self.settings.share_token_length)[: self.settings.share_token_length]

    def issue(self, promise_id: int, requester_id: int) -> ShareResponse:
        with self.db.transaction() as session:
            promise = _owned_promise(session, promise_id, requester_id, "share")
            share = self._insert_share(session, promise)
            share_url = f"{self.settings.share_base_url}{share.token}"
            log.info("Promise %s shared: share=%s", promise_id, share.id)
            return ShareResponse(
                share=Share.model_validate(share),
                share_url=share_url,
                preview=SharePreview(
                    title=promise.title,
                    description=promise.body,
                    link=share_url,
                    date=promise.scheduled_at,
                    location=promise.address,
                ),
            )

    def lookup(self, token: str) -> PromiseSummary:
        with self.db.transaction(write=False) as session:
            share = session.scalar(select(ShareRow).where(ShareRow.token == token))
            if share is None:
                raise NotFoundError("Invalid share link")
            promise = share.promise
            return PromiseSummary(
                share_id=share.id,
                title=promise.title,
                date=promise.scheduled_at,
                location=promise.address,
                location_detail=promise.address_detail,
                text=promise.body,
            )

    def _insert_share(self, session: Session, promise: PromiseRow) -> ShareRow:
        for _ in range(self.MAX_TOKEN_ATTEMPTS):
            share = ShareRow(promise_id=promise.id, token=self.token_factory())
            try:
                with session.begin_nested():
                    session.add(share)
            except IntegrityError:
                log.warning("Share token collision for promise %s, regenerating", promise.id)
                continue
            return share
        raise InternalError("Could not allocate a unique share token")


class EvaluationWorkflow:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        reward_trigger: Optional[RewardTrigger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.reward_trigger = reward_trigger
        self.clock = clock

    def submit(
        self,
        share_ref: Union[int, str],
        evaluator: EvaluatorIdentity,
        outcome: EvaluationOutcome,
    ) -> EvaluationResponse:
        with self.db.transaction() as session:
            share = self._resolve_share(session, share_ref)
            self._check_window(share)

            if self._is_evaluated(session, share.id):
                log.warning("Evaluation rejected: share %s already evaluated", share.id)
                raise AlreadyEvaluatedError()

            record = EvaluationRow(share_id=share.id)
            if isinstance(evaluator, RegisteredEvaluator):
                if session.get(UserRow, evaluator.user_id) is None:
                    raise NotFoundError(f"User {evaluator.user_id} not found")
                record.user_id = evaluator.user_id
            else:
                record.guest = self._resolve_guest(session, evaluator)
            session.add(record)

            share.check_status = int(outcome.check_status)
            share.score = outcome.score if outcome.score is not None and 1 <= outcome.score <= 5 else DEFAULT_SCORE
            if outcome.feedback and outcome.feedback.strip():
                share.feedback = outcome.feedback

            try:
                session.flush()
            except IntegrityError as e:
                log.warning("Evaluation rejected at flush: share %s already evaluated", share.id)
                raise AlreadyEvaluatedError() from e

            is_guest = isinstance(evaluator, GuestEvaluator)
            response = EvaluationResponse(
                evaluation=self._to_evaluation(record),
                share=Share.model_validate(share),
                is_guest=is_guest,
                signup_suggestion=SIGNUP_SUGGESTION if is_guest else None,
                signup_url=self.settings.signup_url if is_guest else None,
                message="Evaluation completed",
            )
            context = {
                "beneficiary_id": share.promise.owner_id,
                "activity_id": share.id,
                "share": {"id": share.id, "check_status": share.check_status, "score": share.score},
                "promise": {"id": share.promise_id, "owner_id": share.promise.owner_id},
                "evaluator": {"kind": evaluator.kind},
            }
        log.info("Share %s evaluated: check=%s score=%s guest=%s",
                 response.share.id, response.share.check_status, response.share.score, is_guest)

        if self.reward_trigger is not None:
            response.rewards = self.reward_trigger.fire(TriggerEvent.SHARE_EVALUATED, context)
        return response

    def _is_evaluated(self, session: Session, share_id: int) -> bool:
        return session.scalar(select(EvaluationRow.id).where(EvaluationRow.share_id == share_id)) is not None

    def _resolve_share(self, session: Session, share_ref: Union[int, str]) -> ShareRow:
        if isinstance(share_ref, int):
            share = session.get(ShareRow, share_ref)
        else:
            share = session.scalar(select(ShareRow).where(ShareRow.token == share_ref))
        if share is None:
            raise NotFoundError(f"Share {share_ref} not found")
        return share

    def _check_window(self, share: ShareRow) -> None:
        scheduled_at = share.promise.scheduled_at
        if scheduled_at is None:
            return
        deadline = scheduled_at + timedelta(hours=self.settings.evaluation_window_hours)
        now = _to_naive_utc(self.clock())
        if now > deadline:
            log.warning("Evaluation rejected: share %s window closed at %s", share.id, deadline)
            raise WindowExpiredError(
                f"Evaluations close {self.settings.evaluation_window_hours}h after the promise ({deadline.isoformat()})"
            )

    def _resolve_guest(self, session: Session, evaluator: GuestEvaluator) -> GuestRow:
        if evaluator.guest_id is not None:
            guest = session.get(GuestRow, evaluator.guest_id)
            if guest is None:
                raise NotFoundError(f"Guest {evaluator.guest_id} not found")
            return guest
        name = evaluator.display_name.strip() if evaluator.display_name else ""
        guest = GuestRow(name=name or DEFAULT_GUEST_NAME)
        session.add(guest)
        return guest

    def _to_evaluation(self, record: EvaluationRow) -> Evaluation:
        if record.user_id is not None:
            evaluator = RegisteredEvaluator(user_id=record.user_id)
        else:
            evaluator = GuestEvaluator(guest_id=record.guest.id, display_name=record.guest.name)
        return Evaluation(id=record.id, share_id=record.share_id, evaluator=evaluator, created_at=record.created_at)
