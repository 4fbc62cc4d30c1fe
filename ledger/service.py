import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.db import Database
from core.errors import (
    AlreadyPaidError,
    ConflictError,
    InsufficientFundsError,
    InvalidInputError,
    NotFoundError,
)
from core.tables import LedgerEntryRow, PointPolicyRow, UserRow

from .models import (
    ActivityRef,
    LedgerEntry,
    LedgerHistoryResponse,
    PointPayRequest,
    PointPolicy,
    PolicyPage,
    UpdatePointPolicyRequest,
    UserBalance,
)

log = logging.getLogger("promise_ledger.ledger")


class PointPolicyCatalog:
    def __init__(self, db: Database):
        self.db = db

    def create(self, name: str, delta: int) -> PointPolicy:
        with self.db.transaction() as session:
            if self._find_by_name(session, name) is not None:
                log.warning("Policy create rejected: duplicate name %r", name)
                raise ConflictError(f"Point policy {name!r} already exists")
            row = PointPolicyRow(name=name, delta=delta)
            session.add(row)
            self._flush_unique_name(session, name)
            log.info("Point policy created: id=%s name=%r delta=%s", row.id, row.name, row.delta)
            return PointPolicy.model_validate(row)

    def get(self, policy_id: int) -> PointPolicy:
        with self.db.transaction(write=False) as session:
            return PointPolicy.model_validate(self._load(session, policy_id))

    def get_by_name(self, name: str) -> PointPolicy:
        with self.db.transaction(write=False) as session:
            row = self._find_by_name(session, name)
            if row is None:
                raise NotFoundError(f"Point policy {name!r} not found")
            return PointPolicy.model_validate(row)

    def list_policies(self, page: int = 0, size: int = 20) -> PolicyPage:
        if page < 0 or size <= 0:
            raise InvalidInputError("page must be >= 0 and size must be > 0")
        with self.db.transaction(write=False) as session:
            total = session.scalar(select(func.count()).select_from(PointPolicyRow))
            rows = session.scalars(
                select(PointPolicyRow).order_by(PointPolicyRow.id).offset(page * size).limit(size)
            ).all()
            return PolicyPage(
                items=[PointPolicy.model_validate(r) for r in rows],
                page=page,
                size=size,
                total_count=total,
            )

    def update(self, policy_id: int, request: UpdatePointPolicyRequest) -> PointPolicy:
        if not request.has_update_data():
            raise InvalidInputError("Provide point_name or update_point")

        with self.db.transaction() as session:
            row = self._load(session, policy_id)
            if request.point_name is not None:
                existing = self._find_by_name(session, request.point_name)
                if existing is not None and existing.id != policy_id:
                    log.warning("Policy update rejected: name %r taken by id=%s", request.point_name, existing.id)
                    raise ConflictError(f"Point policy {request.point_name!r} already exists")
                row.name = request.point_name
            if request.update_point is not None:
                row.delta = request.update_point
            self._flush_unique_name(session, row.name)
            log.info("Point policy updated: id=%s name=%r delta=%s", row.id, row.name, row.delta)
            return PointPolicy.model_validate(row)

    def delete(self, policy_id: int) -> None:
        with self.db.transaction() as session:
            row = self._load(session, policy_id)
            pay_count = session.scalar(
                select(func.count()).select_from(LedgerEntryRow).where(LedgerEntryRow.policy_id == policy_id)
            )
            if pay_count:
                log.warning("Policy delete rejected: %s ledger entries reference id=%s", pay_count, policy_id)
                raise ConflictError("Points were paid under this policy; it cannot be deleted")
            session.delete(row)
            try:
                session.flush()
            except IntegrityError as e:
                raise ConflictError("Points were paid under this policy; it cannot be deleted") from e
            log.info("Point policy deleted: id=%s name=%r", policy_id, row.name)

    def _load(self, session: Session, policy_id: int) -> PointPolicyRow:
        row = session.get(PointPolicyRow, policy_id)
        if row is None:
            raise NotFoundError(f"Point policy {policy_id} not found")
        return row

    def _find_by_name(self, session: Session, name: str) -> Optional[PointPolicyRow]:
        return session.scalar(select(PointPolicyRow).where(PointPolicyRow.name == name))

    def _flush_unique_name(self, session: Session, name: str) -> None:
        try:
            session.flush()
        except IntegrityError as e:
            raise ConflictError(f"Point policy {name!r} already exists") from e


class LedgerService:
    def __init__(self, db: Database):
        self.db = db

    def pay(self, request: PointPayRequest) -> LedgerEntry:
        refs = request.activity_refs()
        if len(refs) > 1:
            raise InvalidInputError("Supply at most one of attendance_id, share_id, work_id, farm_id")
        return self.disburse(
            request.user_id,
            request.point_policy_id,
            activity=refs[0] if refs else None,
            reason=request.reason,
        )

    def disburse(
        self,
        user_id: int,
        policy_id: int,
        activity: Optional[ActivityRef] = None,
        reason: Optional[str] = None,
    ) -> LedgerEntry:
        with self.db.transaction() as session:
            user = self._lock_user(session, user_id)
            policy = session.get(PointPolicyRow, policy_id)
            if policy is None:
                log.warning("Disbursement rejected: unknown policy id=%s", policy_id)
                raise NotFoundError(f"Point policy {policy_id} not found")

            if activity is not None and self._is_paid(session, activity):
                log.warning("Disbursement rejected: %s %s already paid", activity.type.value, activity.id)
                raise AlreadyPaidError(f"Points already paid for {activity.type.value} {activity.id}")

            delta = policy.delta
            if delta < 0 and user.point < abs(delta):
                log.warning(
                    "Disbursement rejected: insufficient points user=%s needed=%s held=%s",
                    user_id, abs(delta), user.point,
                )
                raise InsufficientFundsError(f"Needs {abs(delta)} points, has {user.point}")

            user.point = user.point + delta
            entry = LedgerEntryRow(
                user_id=user_id,
                policy_id=policy.id,
                delta=delta,
                balance_after=user.point,
                activity_type=activity.type.value if activity else None,
                activity_id=activity.id if activity else None,
                reason=reason,
            )
            session.add(entry)
            try:
                session.flush()
            except IntegrityError as e:
                # A concurrent request for the same activity won the unique index.
                log.warning("Disbursement rejected at flush: activity already paid (%s)", activity)
                raise AlreadyPaidError(
                    f"Points already paid for {activity.type.value} {activity.id}" if activity else None
                ) from e
            except StaleDataError as e:
                log.warning("Disbursement rejected: balance of user=%s changed concurrently", user_id)
                raise ConflictError("Balance changed concurrently; retry the request") from e

            log.info(
                "Points %s: user=%s policy=%r delta=%s balance=%s activity=%s",
                "paid" if delta >= 0 else "deducted",
                user_id, policy.name, delta, user.point,
                f"{activity.type.value}:{activity.id}" if activity else "none",
            )
            return LedgerEntry.model_validate(entry)

    def get_balance(self, user_id: int) -> UserBalance:
        with self.db.transaction(write=False) as session:
            return self._balance(session, user_id)

    def get_ledger_history(self, user_id: int, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.db.transaction(write=False) as session:
            balance = self._balance(session, user_id)
            rows = session.scalars(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.user_id == user_id)
                .order_by(LedgerEntryRow.created_at.desc(), LedgerEntryRow.id.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.model_validate(r) for r in rows],
                total_count=balance.total_entries,
                current_balance=balance.current_balance,
            )

    def _balance(self, session: Session, user_id: int) -> UserBalance:
        user = session.get(UserRow, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        total, last_at = session.execute(
            select(func.count(LedgerEntryRow.id), func.max(LedgerEntryRow.created_at))
            .where(LedgerEntryRow.user_id == user_id)
        ).one()
        return UserBalance(
            user_id=user_id,
            current_balance=user.point,
            total_entries=total,
            last_transaction_at=last_at,
        )

    def _lock_user(self, session: Session, user_id: int) -> UserRow:
        # FOR UPDATE serializes balance writers on PostgreSQL/MySQL; SQLite
        # relies on the BEGIN IMMEDIATE write lock taken by core.db.
        user = session.scalar(select(UserRow).where(UserRow.id == user_id).with_for_update())
        if user is None:
            log.warning("Disbursement rejected: unknown user id=%s", user_id)
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _is_paid(self, session: Session, activity: ActivityRef) -> bool:
        return session.scalar(
            select(LedgerEntryRow.id).where(
                LedgerEntryRow.activity_type == activity.type.value,
                LedgerEntryRow.activity_id == activity.id,
            )
        ) is not None
