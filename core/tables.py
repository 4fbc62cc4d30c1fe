from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

DEFAULT_FEEDBACK = "Thanks for keeping your promise!"
DEFAULT_GUEST_NAME = "Passing shepherd"
DEFAULT_SCORE = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    nickname: Mapped[str] = mapped_column(String(50), nullable=False)
    point: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (CheckConstraint("point >= 0", name="ck_users_point_non_negative"),)
    # Every balance write bumps the version; a concurrent writer holding a
    # stale copy fails with StaleDataError instead of overwriting.
    __mapper_args__ = {"version_id_col": version}


class PromiseRow(Base):
    __tablename__ = "promise"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    alert_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address_detail: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    shares: Mapped[list["ShareRow"]] = relationship(
        back_populates="promise", cascade="all, delete-orphan", order_by="ShareRow.id"
    )
    cycles: Mapped[list["PromiseCycleRow"]] = relationship(
        back_populates="promise", cascade="all, delete-orphan", order_by="PromiseCycleRow.id"
    )

    __table_args__ = (
        CheckConstraint("latitude IS NULL OR latitude BETWEEN -90 AND 90", name="ck_promise_latitude"),
        CheckConstraint("longitude IS NULL OR longitude BETWEEN -180 AND 180", name="ck_promise_longitude"),
    )


class PromiseCycleRow(Base):
    __tablename__ = "promise_cycle"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    promise_id: Mapped[int] = mapped_column(ForeignKey("promise.id", ondelete="CASCADE"), index=True, nullable=False)
    # daily | weekly | monthly | quarterly | semi_annual | yearly
    cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    promise: Mapped[PromiseRow] = relationship(back_populates="cycles")

    __table_args__ = (CheckConstraint("ends_at >= starts_at", name="ck_promise_cycle_range"),)


class ShareRow(Base):
    __tablename__ = "share"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    promise_id: Mapped[int] = mapped_column(ForeignKey("promise.id", ondelete="CASCADE"), index=True, nullable=False)
    token: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    check_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_SCORE)
    feedback: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_FEEDBACK)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    promise: Mapped[PromiseRow] = relationship(back_populates="shares")
    evaluation: Mapped[Optional["EvaluationRow"]] = relationship(
        back_populates="share", cascade="all, delete-orphan", uselist=False
    )

    __table_args__ = (
        CheckConstraint("check_status IN (-1, 0, 1)", name="ck_share_check_status"),
        CheckConstraint("score BETWEEN 1 AND 5", name="ck_share_score"),
    )


class GuestRow(Base):
    __tablename__ = "guest"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(30), nullable=False, default=DEFAULT_GUEST_NAME)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class EvaluationRow(Base):
    __tablename__ = "evaluation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # One evaluation per share, whoever the evaluator is.
    share_id: Mapped[int] = mapped_column(ForeignKey("share.id", ondelete="CASCADE"), unique=True, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    guest_id: Mapped[Optional[int]] = mapped_column(ForeignKey("guest.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    share: Mapped[ShareRow] = relationship(back_populates="evaluation")
    guest: Mapped[Optional[GuestRow]] = relationship()

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (guest_id IS NULL)",
            name="ck_evaluation_single_evaluator",
        ),
    )


class PointPolicyRow(Base):
    __tablename__ = "point_policy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)


class LedgerEntryRow(Base):
    __tablename__ = "ledger_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    policy_id: Mapped[int] = mapped_column(ForeignKey("point_policy.id", ondelete="RESTRICT"), index=True, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    # attendance | share | work | farm; both NULL for manual adjustments
    activity_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    activity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_type", "activity_id", name="uq_ledger_entry_activity"),
        CheckConstraint("(activity_type IS NULL) = (activity_id IS NULL)", name="ck_ledger_entry_activity_pair"),
    )
