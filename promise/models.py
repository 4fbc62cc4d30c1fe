from datetime import datetime
from enum import Enum, IntEnum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict

from rules.rule_engine import RewardResult


class CheckStatus(IntEnum):
    BROKEN = -1
    KEPT = 0
    KEPT_WELL = 1


class RegisteredEvaluator(BaseModel):
    kind: Literal["registered"] = "registered"
    user_id: int


class GuestEvaluator(BaseModel):
    kind: Literal["guest"] = "guest"
    guest_id: Optional[int] = None
    display_name: Optional[str] = Field(default=None, max_length=30)


EvaluatorIdentity = Annotated[Union[RegisteredEvaluator, GuestEvaluator], Field(discriminator="kind")]


class EvaluationOutcome(BaseModel):
    check_status: CheckStatus
    score: Optional[int] = Field(default=None, description="1-5; anything else keeps the default of 3")
    feedback: Optional[str] = None


class EvalRequest(EvaluationOutcome):
    user_id: int = Field(..., gt=0)


class TempEvalRequest(EvaluationOutcome):
    temp_id: Optional[int] = Field(default=None, gt=0)
    temp_name: Optional[str] = Field(default=None, max_length=30)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "temp_name": "Old friend",
            "check_status": 1,
            "score": 5,
            "feedback": "great",
        }
    })


class PromiseCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    scheduled_at: Optional[datetime] = None
    alert_minutes: int = Field(default=0, ge=0)
    address: Optional[str] = Field(default=None, max_length=255)
    address_detail: Optional[str] = Field(default=None, max_length=255)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    body: str
    memo: Optional[str] = None


class PromiseUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    scheduled_at: Optional[datetime] = None
    alert_minutes: Optional[int] = Field(default=None, ge=0)
    address: Optional[str] = Field(default=None, max_length=255)
    address_detail: Optional[str] = Field(default=None, max_length=255)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    body: Optional[str] = None
    memo: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Brunch",
            "scheduled_at": None,
        }
    })


class MemoRequest(BaseModel):
    memo: str = Field(..., min_length=1)


class CycleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    YEARLY = "yearly"


class PromiseCycleRequest(BaseModel):
    cycle: CycleType
    starts_at: datetime
    ends_at: datetime


class PromiseCycleUpdateRequest(BaseModel):
    cycle: Optional[CycleType] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    def has_update_data(self) -> bool:
        return any(v is not None for v in (self.cycle, self.starts_at, self.ends_at))


class PromiseCycle(BaseModel):
    id: int
    promise_id: int
    cycle: CycleType
    starts_at: datetime
    ends_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Promise(BaseModel):
    id: int
    owner_id: int
    title: str
    scheduled_at: Optional[datetime] = None
    alert_minutes: int = 0
    address: Optional[str] = None
    address_detail: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    body: str
    memo: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Share(BaseModel):
    id: int
    promise_id: int
    token: str
    check_status: CheckStatus
    score: int
    feedback: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PromiseDetail(BaseModel):
    promise: Promise
    shares: list[Share]
    share_count: int
    cycles: list[PromiseCycle] = Field(default_factory=list)


class PromiseList(BaseModel):
    items: list[Promise]
    total_count: int


class SharePreview(BaseModel):
    title: str
    description: str
    link: str
    date: Optional[datetime] = None
    location: Optional[str] = None


class ShareResponse(BaseModel):
    share: Share
    share_url: str
    preview: SharePreview


class PromiseSummary(BaseModel):
    share_id: int
    title: str
    date: Optional[datetime] = None
    location: Optional[str] = None
    location_detail: Optional[str] = None
    text: str


class Evaluation(BaseModel):
    id: int
    share_id: int
    evaluator: EvaluatorIdentity
    created_at: datetime


class EvaluationResponse(BaseModel):
    evaluation: Evaluation
    share: Share
    is_guest: bool = False
    signup_suggestion: Optional[str] = None
    signup_url: Optional[str] = None
    rewards: list[RewardResult] = Field(default_factory=list)
    message: str
