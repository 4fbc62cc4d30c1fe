from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ActivityType(str, Enum):
    ATTENDANCE = "attendance"
    SHARE = "share"
    WORK = "work"
    FARM = "farm"


class ActivityRef(BaseModel):
    type: ActivityType
    id: int = Field(..., gt=0)

    model_config = ConfigDict(frozen=True)


class PointPolicy(BaseModel):
    id: int
    name: str
    delta: int

    model_config = ConfigDict(from_attributes=True)


class CreatePointPolicyRequest(BaseModel):
    point_name: str = Field(..., min_length=1, max_length=50)
    update_point: int = Field(..., description="Signed point delta applied on disbursement")


class UpdatePointPolicyRequest(BaseModel):
    point_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    update_point: Optional[int] = None

    def has_update_data(self) -> bool:
        return self.point_name is not None or self.update_point is not None


class PointPayRequest(BaseModel):
    user_id: int = Field(..., gt=0)
    point_policy_id: int = Field(..., gt=0)
    attendance_id: Optional[int] = Field(default=None, gt=0)
    share_id: Optional[int] = Field(default=None, gt=0)
    work_id: Optional[int] = Field(default=None, gt=0)
    farm_id: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": 1,
            "point_policy_id": 1,
            "attendance_id": 5,
            "reason": "Daily check-in",
        }
    })

    def activity_refs(self) -> list[ActivityRef]:
        supplied = (
            (ActivityType.ATTENDANCE, self.attendance_id),
            (ActivityType.SHARE, self.share_id),
            (ActivityType.WORK, self.work_id),
            (ActivityType.FARM, self.farm_id),
        )
        return [ActivityRef(type=kind, id=ref_id) for kind, ref_id in supplied if ref_id is not None]


class LedgerEntry(BaseModel):
    id: int
    user_id: int
    policy_id: int
    delta: int
    balance_after: int
    activity_type: Optional[ActivityType] = None
    activity_id: Optional[int] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def activity(self) -> Optional[ActivityRef]:
        if self.activity_type is None:
            return None
        return ActivityRef(type=self.activity_type, id=self.activity_id)


class UserBalance(BaseModel):
    user_id: int
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: int
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class PolicyPage(BaseModel):
    items: list[PointPolicy]
    page: int
    size: int
    total_count: int
